import os
import logging
from dotenv import load_dotenv
from telegram import Bot

load_dotenv()


def _token():
    return (
        os.getenv("TELEGRAM_BOT_TOKEN")
        or os.getenv("BOT_TOKEN")
        or os.getenv("TOKEN")
    )


async def send_telegram_message(chat_id: int, text: str) -> bool:
    """Push ``text`` to a Telegram chat. Returns False when nothing was sent."""
    token = _token()
    if not token:
        logging.info("TELEGRAM_BOT_TOKEN not set; skipping message for chat_id=%s", chat_id)
        return False
    try:
        bot = Bot(token=token)
        logging.info("Sending Telegram message: chat_id=%s", chat_id)
        await bot.send_message(chat_id=chat_id, text=text)
        return True
    except Exception:
        logging.exception("Failed to send Telegram message to chat_id=%s", chat_id)
        return False
