import asyncio
import logging

import psutil

from advanced_config import CLEANUP_SETTINGS, MONITOR_SETTINGS
from errors import StoreError

logger = logging.getLogger(__name__)


class CleanupManager:
    def __init__(self, db, cache):
        self.db = db
        self.cache = cache

    async def start_cleanup(self):
        """Start periodic cleanup"""
        while True:
            try:
                await self.run_cleanup()
                await asyncio.sleep(CLEANUP_SETTINGS["interval"])
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in cleanup: {e}")
                await asyncio.sleep(CLEANUP_SETTINGS["error_delay"])

    async def run_cleanup(self):
        """Drop expired OTP codes and cache entries"""
        otps = self.db.clear_expired_otps()
        entries = await self.cache.clear_expired()
        logger.info(f"Cleanup done: {otps} expired OTPs, {entries} cache entries")
        return otps, entries


class SystemMonitor:
    def __init__(self, db, whatsapp, alert=None):
        self.db = db
        self.whatsapp = whatsapp
        self.alert = alert

    async def start_monitoring(self):
        """Start system monitoring"""
        while True:
            try:
                await self.check_system_health()
                await asyncio.sleep(MONITOR_SETTINGS["interval"])
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in system monitoring: {e}")
                await asyncio.sleep(60)

    async def check_system_health(self):
        """Check database, WhatsApp session, disk and memory; alert the admin on problems"""
        warnings = []

        try:
            self.db.count_users()
        except StoreError as e:
            warnings.append(f"❌ Base de données inaccessible : {e}")

        if not self.whatsapp.ready:
            logger.warning(f"WhatsApp session not ready: {self.whatsapp.state}")

        disk_usage = psutil.disk_usage('/')
        if disk_usage.percent > MONITOR_SETTINGS["disk_alert_percent"]:
            logger.warning(f"High disk usage: {disk_usage.percent}%")
            warnings.append(f"⚠️ Alerte : espace disque presque plein ({disk_usage.percent}%)")

        memory = psutil.virtual_memory()
        if memory.percent > MONITOR_SETTINGS["memory_alert_percent"]:
            logger.warning(f"High memory usage: {memory.percent}%")
            warnings.append(f"⚠️ Alerte : utilisation mémoire élevée ({memory.percent}%)")

        if warnings and self.alert is not None:
            await self.alert("\n".join(warnings))
        return warnings


def system_info():
    """Host snapshot for the health and metrics endpoints"""
    process = psutil.Process()
    memory = process.memory_info()
    return {
        "cpu_percent": psutil.cpu_percent(interval=None),
        "memory_percent": psutil.virtual_memory().percent,
        "disk_percent": psutil.disk_usage('/').percent,
        "process": {
            "rss": memory.rss,
            "vms": memory.vms,
        },
    }
