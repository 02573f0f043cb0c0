import logging

from dotenv import load_dotenv
from fastapi import FastAPI

from foundry_host.api import action_router

load_dotenv()
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Foundry host orchestrator")
app.include_router(action_router.router, prefix="/api")


@app.get("/health")
async def health():
    return {"status": "ok"}
