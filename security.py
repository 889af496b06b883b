from datetime import datetime, timedelta
from functools import wraps
from passlib.context import CryptContext
from telegram import Update
from config import ADMIN_CHAT_ID, MESSAGES, OTP_LENGTH, OTP_TTL_MINUTES
from advanced_config import SECURITY_SETTINGS
import logging
import re
import secrets

logger = logging.getLogger(__name__)

# Password hashing (bcrypt)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def normalize_phone(phone: str) -> str:
    """Canonical phone key: trimmed, with a leading '+'."""
    phone = (phone or "").strip()
    if phone and not phone.startswith('+'):
        phone = '+' + phone
    return phone


def phone_digits(phone: str) -> str:
    return re.sub(r'[^0-9]', '', phone or "")


def generate_otp(now=None):
    """Return a numeric OTP and its absolute expiry time."""
    now = now or datetime.utcnow()
    otp = str(secrets.randbelow(10 ** OTP_LENGTH)).zfill(OTP_LENGTH)
    return otp, now + timedelta(minutes=OTP_TTL_MINUTES)


def validate_input(text: str, input_type: str):
    """Validate user input"""
    patterns = {
        'phone': r'^\+[0-9]{8,15}$',
        'otp': r'^[0-9]{%d}$' % OTP_LENGTH,
        'amount': r'^[0-9]+$',
    }

    if input_type not in patterns or not isinstance(text, str):
        return False

    return bool(re.match(patterns[input_type], text))


class SecurityManager:
    def __init__(self):
        self.login_attempts = {}
        self.blocked_users = {}

    def check_login_attempts(self, phone: str):
        """Register a failed login; False once the phone is over the limit"""
        now = datetime.utcnow()
        if self.is_blocked(phone):
            return False

        attempts = self.login_attempts.get(phone)
        if attempts is None or now - attempts['first_attempt'] > timedelta(seconds=SECURITY_SETTINGS["block_time"]):
            self.login_attempts[phone] = {'count': 1, 'first_attempt': now}
            return True

        attempts['count'] += 1
        if attempts['count'] >= SECURITY_SETTINGS["max_login_attempts"]:
            self.blocked_users[phone] = now
            logger.warning(f"Login blocked for {phone} after {attempts['count']} failed attempts")
            return False
        return True

    def reset_login_attempts(self, phone: str):
        self.login_attempts.pop(phone, None)
        self.blocked_users.pop(phone, None)

    def is_blocked(self, phone: str):
        """Check if phone is blocked"""
        if phone not in self.blocked_users:
            return False

        if datetime.utcnow() - self.blocked_users[phone] > timedelta(seconds=SECURITY_SETTINGS["block_time"]):
            del self.blocked_users[phone]
            self.login_attempts.pop(phone, None)
            return False

        return True


def is_admin_chat(update: Update) -> bool:
    chat = update.effective_chat
    return chat is not None and chat.id == ADMIN_CHAT_ID


def admin_only(func):
    """Decorator for handlers restricted to the admin chat"""
    @wraps(func)
    async def wrapper(self, update: Update, context, *args, **kwargs):
        if not is_admin_chat(update):
            if update.callback_query:
                await update.callback_query.answer(MESSAGES["access_denied"], show_alert=True)
            elif update.effective_message:
                await update.effective_message.reply_text(MESSAGES["access_denied"])
            return
        return await func(self, update, context, *args, **kwargs)
    return wrapper
