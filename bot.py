import logging
from typing import List

from telegram import Update, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.constants import ParseMode
from telegram.error import TelegramError
from telegram.ext import Application, CallbackContext, CallbackQueryHandler, CommandHandler

from approvals import (
    Row, callback_answer, console_state, notification_text, payment_review, registration_request
)
from cache_manager import CacheManager
from config import ADMIN_CHAT_ID, MESSAGES
from database import Database
from entitlements import (
    AnswerCallback, CallbackEvent, EntitlementKey, NotifyUser, RenderConsole, WriteEntitlement,
    granted_keys, parse_callback, state_of, transition
)
from errors import AlreadyInState, NotFoundError, StoreError, ValidationError
from security import admin_only, normalize_phone
from whatsapp import SendStatus, WhatsAppChannel

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)
logger = logging.getLogger(__name__)


def to_markup(rows: List[Row]) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [InlineKeyboardButton(text, callback_data=data) for text, data in row]
        for row in rows
    ])


class ErrorHandler:
    def __init__(self, admin_bot):
        self.admin_bot = admin_bot

    async def handle_error(self, update: object, context: CallbackContext):
        logger.error("Unhandled error in Telegram handler", exc_info=context.error)
        try:
            await self.admin_bot.bot.send_message(
                ADMIN_CHAT_ID,
                f"❌ Erreur système :\n{context.error}"
            )
        except TelegramError as e:
            logger.error(f"Error in error handler: {e}")


class AdminBot:
    """Telegram approval console.

    Posts approval requests for registrations and payments, and turns the
    administrator's button clicks into entitlement transitions.
    """

    def __init__(self, db: Database, whatsapp: WhatsAppChannel, cache: CacheManager, bot=None):
        self.db = db
        self.whatsapp = whatsapp
        self.cache = cache
        self.bot = bot
        self.error_handler = ErrorHandler(self)

    def register(self, application: Application):
        self.bot = application.bot
        application.add_handler(CommandHandler("start", self.start))
        application.add_handler(CommandHandler("user", self.show_user))
        application.add_handler(CommandHandler("users", self.list_users))
        application.add_handler(CallbackQueryHandler(self.handle_entitlement_callback))
        application.add_error_handler(self.error_handler.handle_error)

    # Approval requests

    async def send_registration_request(self, user):
        text, rows = registration_request(user)
        await self.bot.send_message(
            ADMIN_CHAT_ID,
            text,
            parse_mode=ParseMode.HTML,
            reply_markup=to_markup(rows)
        )
        logger.info(f"Registration request posted for user {user.id}")

    async def submit_payment(self, user, key: EntitlementKey, reference, mode, price) -> bool:
        """Post a payment for review; False when the key is already granted."""
        if state_of(user)[key]:
            logger.info(f"Payment from {user.phone} for {key.label} ignored: already granted")
            return False
        text, rows = payment_review(user, key, reference, mode, price)
        await self.bot.send_message(
            ADMIN_CHAT_ID,
            text,
            parse_mode=ParseMode.HTML,
            reply_markup=to_markup(rows)
        )
        logger.info(f"Payment review posted for {user.phone} ({key.label}, ref {reference})")
        return True

    async def send_pairing_qr(self, pdf: bytes):
        await self.bot.send_document(
            ADMIN_CHAT_ID,
            document=pdf,
            filename="whatsapp_qr.pdf",
            caption=MESSAGES["whatsapp_qr"]
        )

    async def send_alert(self, text: str):
        await self.bot.send_message(ADMIN_CHAT_ID, text)

    # Commands

    @admin_only
    async def start(self, update: Update, context: CallbackContext):
        """Start command handler"""
        await update.message.reply_text(MESSAGES["welcome_admin"], parse_mode=ParseMode.HTML)

    @admin_only
    async def show_user(self, update: Update, context: CallbackContext):
        """/user <phone>: display the entitlement board of a user"""
        try:
            if not context.args:
                await update.message.reply_text("Usage : /user +22670000000")
                return

            user = self.db.get_user_by_phone(normalize_phone(context.args[0]))
            if not user:
                await update.message.reply_text(MESSAGES["user_not_found"])
                return

            text, rows = console_state(user)
            await update.message.reply_text(text, parse_mode=ParseMode.HTML, reply_markup=to_markup(rows))

        except StoreError as e:
            logger.error(f"Error in show_user: {e}")
            await update.message.reply_text(MESSAGES["console_error"])

    @admin_only
    async def list_users(self, update: Update, context: CallbackContext):
        """/users: latest registrations with their active sections"""
        try:
            users = self.db.list_users()[:20]
            if not users:
                await update.message.reply_text("Aucun utilisateur inscrit.")
                return

            lines = []
            for user in users:
                active = ", ".join(key.label for key in granted_keys(user)) or "aucun accès"
                lines.append(f"• {user.name} ({user.phone}) : {active}")
            await update.message.reply_text("👥 Derniers inscrits :\n\n" + "\n".join(lines))

        except StoreError as e:
            logger.error(f"Error in list_users: {e}")
            await update.message.reply_text(MESSAGES["console_error"])

    # Entitlement callbacks

    @admin_only
    async def handle_entitlement_callback(self, update: Update, context: CallbackContext):
        """Handle validate_/cancel_ button clicks"""
        query = update.callback_query
        try:
            event = parse_callback(query.data)
        except ValidationError as e:
            logger.info(f"Rejected callback: {e}")
            await self._answer(query, MESSAGES["invalid_request"], show_alert=True)
            return

        await self.process_event(query, event)

    async def process_event(self, query, event: CallbackEvent):
        """Execute the effects of one entitlement transition, in order.

        The store write is conditional, so a concurrent click that already
        applied the same transition ends here with an "already" answer and
        no second notification. Once the write is committed, console
        failures are logged and the user notification still goes out.
        """
        answered = False
        try:
            user = self.db.get_user_by_id(event.user_id)
            _, effects = transition(state_of(user), event)

            for effect in effects:
                if isinstance(effect, WriteEntitlement):
                    try:
                        user = self.db.set_entitlement(event.user_id, effect.key, effect.value)
                    except AlreadyInState:
                        outcome = "already_approved" if effect.value else "already_cancelled"
                        answered = await self._answer(query, callback_answer(outcome, effect.key))
                        return
                    await self.cache.invalidate_user(user.phone)
                    logger.info(f"{effect.key.label} set to {effect.value} for user {user.id}")

                elif isinstance(effect, AnswerCallback):
                    answered = await self._answer(query, callback_answer(effect.outcome, effect.key))

                elif isinstance(effect, RenderConsole):
                    await self._render_console(query, user)

                elif isinstance(effect, NotifyUser):
                    status = await self.whatsapp.send(
                        user.phone, notification_text(user, effect.action, effect.key)
                    )
                    if status is SendStatus.UNAVAILABLE:
                        logger.warning(f"User {user.phone} not notified of {effect.key.label}")

        except NotFoundError:
            if not answered:
                await self._answer(query, MESSAGES["user_not_found"], show_alert=True)
        except ValidationError as e:
            logger.info(f"Rejected entitlement event: {e}")
            if not answered:
                await self._answer(query, MESSAGES["invalid_request"], show_alert=True)
        except Exception as e:
            logger.error(f"Error processing {event}: {e}", exc_info=True)
            if not answered:
                await self._answer(query, MESSAGES["console_error"], show_alert=True)

    async def _answer(self, query, text, show_alert=False) -> bool:
        try:
            await query.answer(text, show_alert=show_alert)
        except TelegramError as e:
            # "Query is too old" once the callback outlived its answer window
            logger.warning(f"Callback not answered ({text!r}): {e}")
            return False
        return True

    async def _render_console(self, query, user):
        text, rows = console_state(user)
        try:
            await query.edit_message_text(text, parse_mode=ParseMode.HTML, reply_markup=to_markup(rows))
        except TelegramError as e:
            # BadRequest "Message is not modified" when two clicks render the same board
            logger.warning(f"Console not re-rendered for user {user.id}: {e}")
