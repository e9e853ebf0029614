from aiogram import Bot
from aiogram.exceptions import TelegramAPIError

from core.logger import logger
from services.monitoring_service import MonitorEvent, WarningRaised, AutoSubmitted


def render_event(event: MonitorEvent) -> str:
    if isinstance(event, WarningRaised):
        unit = "minute" if event.threshold_minutes == 1 else "minutes"
        return f"⏱ {event.threshold_minutes} {unit} remaining."
    if isinstance(event, AutoSubmitted):
        verdict = "passed" if event.passed else "not passed"
        return (
            "⏰ Time is up. Your exam was auto-submitted.\n"
            f"Score: {event.result.correct}/{event.result.total} - {event.result.percent}% ({verdict})"
        )
    raise ValueError(f"Unknown event: {type(event).__name__}")


class BotNotifier:
    """Delivers expiry monitor events to the session owner's private chat."""

    def __init__(self, bot: Bot):
        self.bot = bot

    async def notify(self, event: MonitorEvent) -> None:
        try:
            await self.bot.send_message(chat_id=event.user_id, text=render_event(event))
        except TelegramAPIError as e:
            logger.warning("Could not notify user", user_id=event.user_id,
                           session_id=event.session_id, error=str(e))
