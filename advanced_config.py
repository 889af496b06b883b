import os

# Cache Settings
CACHE_SETTINGS = {
    "enabled": True,
    "expire_time": 300,  # 5 minutes
    "max_size": 1000,  # Maximum number of items in cache
    "vip_status_ttl": 900,  # 15 minutes
    "users_ttl": 600,  # 10 minutes
    "videos_ttl": 1800,  # 30 minutes
    "settings_ttl": 300,
}

# Security Settings
SECURITY_SETTINGS = {
    "max_login_attempts": 5,
    "block_time": 900,  # 15 minutes
    "password_min_length": 4,
}

# WhatsApp channel supervision
WHATSAPP_SETTINGS = {
    "poll_interval": 15,  # seconds between status checks
    "reconnect_delay": 5,
    "error_delay": 10,  # gateway unreachable
}

# Cleanup Settings
CLEANUP_SETTINGS = {
    "interval": 3600,  # run hourly
    "error_delay": 300,
}

# Monitoring Settings
MONITOR_SETTINGS = {
    "interval": 300,
    "disk_alert_percent": 90,
    "memory_alert_percent": 90,
}

# Upload Settings
UPLOAD_SETTINGS = {
    "max_size": 200 * 1024 * 1024,  # 200MB
    "page_size": 20,
}

# Path Settings
PATH_SETTINGS = {
    "media_dir": os.getenv("MEDIA_DIR", "media"),
    "log_dir": "logs",
}
