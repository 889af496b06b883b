import asyncio
import logging

from aiohttp import web
from telegram.ext import Application

from advanced_config import PATH_SETTINGS
from api import create_app
from bot import AdminBot
from cache_manager import CacheManager
from config import BOT_TOKEN, DATABASE_URL, HTTP_HOST, HTTP_PORT, PUBLIC_BASE_URL, WHATSAPP_CONFIG
from database import Database
from maintenance import CleanupManager, SystemMonitor
from storage import LocalBlobStore
from whatsapp import WhatsAppChannel

logger = logging.getLogger(__name__)


async def serve():
    """Run the HTTP API, the Telegram console and the background tasks on one loop"""
    db = Database(DATABASE_URL)
    cache = CacheManager()
    blobs = LocalBlobStore(PATH_SETTINGS["media_dir"], base_url=PUBLIC_BASE_URL)
    whatsapp = WhatsAppChannel(
        WHATSAPP_CONFIG["url"],
        WHATSAPP_CONFIG["session"],
        api_key=WHATSAPP_CONFIG["api_key"]
    )

    application = Application.builder().token(BOT_TOKEN).build()
    admin_bot = AdminBot(db, whatsapp, cache)
    admin_bot.register(application)
    whatsapp.on_qr = admin_bot.send_pairing_qr

    runner = web.AppRunner(create_app(db, admin_bot, whatsapp, cache, blobs))
    tasks = []
    try:
        await application.initialize()
        await application.start()
        await application.updater.start_polling()
        logger.info("Telegram console started")

        await whatsapp.connect()
        tasks.append(asyncio.create_task(whatsapp.supervise()))
        tasks.append(asyncio.create_task(CleanupManager(db, cache).start_cleanup()))
        tasks.append(asyncio.create_task(
            SystemMonitor(db, whatsapp, alert=admin_bot.send_alert).start_monitoring()
        ))

        await runner.setup()
        await web.TCPSite(runner, HTTP_HOST, HTTP_PORT).start()
        logger.info(f"HTTP API listening on {HTTP_HOST}:{HTTP_PORT}")

        await asyncio.Event().wait()
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await runner.cleanup()
        await whatsapp.close()
        if application.updater.running:
            await application.updater.stop()
        if application.running:
            await application.stop()
        await application.shutdown()
        logger.info("Server stopped")


def main():
    """Start the server"""
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
