import asyncio
import signal
from zoneinfo import ZoneInfo
from aiogram import Bot
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from core.config import settings
from core.logger import setup_logging, logger
from db.session import engine, AsyncSessionLocal
from handlers.notifier import BotNotifier
from services.monitoring_service import ExpiryMonitor


def _handle_loop_exception(loop, context):
    error = context.get("exception")
    logger.error("Unhandled error in event loop", message=context.get("message"),
                 error=str(error) if error else None, exc_info=error)


async def main():
    # Setup structured logging
    setup_logging()

    loop = asyncio.get_running_loop()
    loop.set_exception_handler(_handle_loop_exception)

    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; KeyboardInterrupt still works
            pass

    if not settings.BOT_TOKEN:
        logger.error("BOT_TOKEN is not set; the expiry monitor cannot notify users")
        return

    bot = Bot(token=settings.BOT_TOKEN)
    monitor = ExpiryMonitor(AsyncSessionLocal, notifier=BotNotifier(bot))

    scheduler = AsyncIOScheduler(timezone=ZoneInfo(settings.SCHEDULER_TIMEZONE))
    monitor.start(scheduler)
    scheduler.start()
    logger.info("Scheduler started (Expiry Monitor).", env=settings.ENV, exam=settings.EXAM_CODE)

    try:
        await stop_event.wait()
        logger.info("Shutdown signal received")
    finally:
        # Stop scheduling first, then let an in-flight sweep finish
        await monitor.stop()
        scheduler.shutdown(wait=False)
        await bot.session.close()
        await engine.dispose()

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logger.info("Application stopped.")
