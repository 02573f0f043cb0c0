from typing import Any, Dict

from fastapi import APIRouter, Body, Depends
from fastapi.responses import Response

from foundry_host.bootstrap import get_dispatcher

router = APIRouter()


@router.post("/action")
async def run_action(event: Dict[str, Any] = Body(...), dispatcher=Depends(get_dispatcher)):
    result = await dispatcher.handle(event)
    return Response(
        content=result["body"],
        status_code=result["statusCode"],
        headers=result["headers"],
    )


@router.get("/actions")
async def list_actions(dispatcher=Depends(get_dispatcher)):
    return {"actions": dispatcher.actions}
