import asyncio
import json
import os
import shutil
import tempfile
import unittest
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

from telegram.error import BadRequest, TimedOut

from approvals import console_state, payment_review, registration_request
from bot import AdminBot
from cache_manager import CacheManager
from config import ADMIN_CHAT_ID
from database import Database, new_object_id
from entitlements import (
    ALL_KEYS, Action, AnswerCallback, CallbackEvent, EntitlementKey, NotifyUser, RenderConsole,
    WriteEntitlement, can_view, callback_data, entitlement_key, parse_callback, state_of, transition
)
from errors import AlreadyInState, ChannelUnavailable, InvalidKey, NotFoundError, ValidationError
from maintenance import CleanupManager, SystemMonitor
from pairing import render_qr_pdf
from security import SecurityManager, generate_otp, normalize_phone, validate_input
from storage import IMAGES, VIDEOS, LocalBlobStore
from whatsapp import READY, SendStatus, WhatsAppChannel, chat_id_for

HARDWARE = EntitlementKey("Informatique", "Hardware")
SOFTWARE = EntitlementKey("Informatique", "Software")


def unpaid_state():
    return {key: False for key in ALL_KEYS}


class TempDatabaseMixin:
    def make_database(self):
        self.tmp_dir = tempfile.mkdtemp()
        self.db = Database(f"sqlite:///{os.path.join(self.tmp_dir, 'test.db')}")
        self.addCleanup(shutil.rmtree, self.tmp_dir, ignore_errors=True)
        self.addCleanup(self.db.engine.dispose)
        return self.db


class TestEntitlements(unittest.TestCase):
    def test_catalog(self):
        """Eight keys, each with its own column"""
        self.assertEqual(len(ALL_KEYS), 8)
        self.assertEqual(HARDWARE.field, "is_informatique_hardware")
        self.assertEqual(EntitlementKey("GSM", "Software").field, "is_gsm_software")
        with self.assertRaises(InvalidKey):
            entitlement_key("Marketing", "Hardware")

    def test_entitlement_key_rejects_non_strings(self):
        for domain, part in ((["Informatique"], "Hardware"), ("Informatique", {"name": "Hardware"}), (None, None)):
            with self.assertRaises(InvalidKey):
                entitlement_key(domain, part)

    def test_parse_callback(self):
        user_id = "65F0A1B2C3D4E5F60718293A"
        event = parse_callback(f"validate_Informatique_Hardware_{user_id}")
        self.assertEqual(event.action, Action.APPROVE)
        self.assertEqual(event.key, HARDWARE)
        self.assertEqual(event.user_id, user_id.lower())

        event = parse_callback(f"cancel_Marketing_Content_{user_id}")
        self.assertEqual(event.action, Action.CANCEL)
        self.assertEqual(event.key, EntitlementKey("Marketing", "Content"))

    def test_parse_callback_rejects_bad_data(self):
        user_id = new_object_id()
        for data in (
            f"approve_Informatique_Hardware_{user_id}",
            f"validate_Marketing_Hardware_{user_id}",
            f"validate_Cuisine_Hardware_{user_id}",
            "validate_Informatique_Hardware_123",
            "validate_Informatique_Hardware",
            "",
            None,
        ):
            with self.assertRaises(ValidationError, msg=data):
                parse_callback(data)

    def test_callback_data_round_trip(self):
        user_id = new_object_id()
        data = callback_data(Action.CANCEL, SOFTWARE, user_id)
        self.assertEqual(data, f"cancel_Informatique_Software_{user_id}")
        self.assertEqual(parse_callback(data), CallbackEvent(Action.CANCEL, SOFTWARE, user_id))

    def test_approve_unpaid(self):
        event = CallbackEvent(Action.APPROVE, HARDWARE, new_object_id())
        state, effects = transition(unpaid_state(), event)
        self.assertTrue(state[HARDWARE])
        self.assertEqual(effects, [
            WriteEntitlement(HARDWARE, True),
            AnswerCallback("approved", HARDWARE),
            RenderConsole(),
            NotifyUser(Action.APPROVE, HARDWARE),
        ])

    def test_approve_granted_is_noop(self):
        event = CallbackEvent(Action.APPROVE, HARDWARE, new_object_id())
        granted = unpaid_state()
        granted[HARDWARE] = True
        state, effects = transition(granted, event)
        self.assertEqual(state, granted)
        self.assertEqual(effects, [AnswerCallback("already_approved", HARDWARE)])

    def test_cancel_unpaid_is_noop(self):
        event = CallbackEvent(Action.CANCEL, HARDWARE, new_object_id())
        state, effects = transition(unpaid_state(), event)
        self.assertEqual(state, unpaid_state())
        self.assertEqual(effects, [AnswerCallback("already_cancelled", HARDWARE)])

    def test_cancel_leaves_other_keys(self):
        start = unpaid_state()
        start[HARDWARE] = True
        start[SOFTWARE] = True
        state, effects = transition(start, CallbackEvent(Action.CANCEL, HARDWARE, new_object_id()))
        self.assertFalse(state[HARDWARE])
        self.assertTrue(state[SOFTWARE])
        self.assertIn(NotifyUser(Action.CANCEL, HARDWARE), effects)

    def test_approve_cancel_approve(self):
        user_id = new_object_id()
        state = unpaid_state()
        for action in (Action.APPROVE, Action.CANCEL, Action.APPROVE):
            state, _ = transition(state, CallbackEvent(action, HARDWARE, user_id))
        self.assertTrue(state[HARDWARE])
        self.assertEqual(sum(state.values()), 1)

    def test_can_view(self):
        user = SimpleNamespace(**{key.field: False for key in ALL_KEYS})
        free = SimpleNamespace(is_paid=False, category_id="GSM", part="Hardware")
        paid = SimpleNamespace(is_paid=True, category_id="Informatique", part="Hardware")
        whole_domain = SimpleNamespace(is_paid=True, category_id="Informatique", part=None)

        self.assertTrue(can_view(free, None))
        self.assertFalse(can_view(paid, None))
        self.assertFalse(can_view(paid, user))
        user.is_informatique_software = True
        self.assertFalse(can_view(paid, user))
        self.assertTrue(can_view(whole_domain, user))
        user.is_informatique_hardware = True
        self.assertTrue(can_view(paid, user))


class TestDatabase(TempDatabaseMixin, unittest.TestCase):
    def setUp(self):
        self.make_database()
        self.user = self.db.create_user("Awa", "+22670000000", "hash")

    def test_create_user(self):
        self.assertRegex(self.user.id, r'^[0-9a-f]{24}$')
        self.assertFalse(any(state_of(self.user).values()))
        with self.assertRaises(ValidationError):
            self.db.create_user("Other", "+22670000000", "hash")

    def test_get_user_by_id(self):
        self.assertEqual(self.db.get_user_by_id(self.user.id.upper()).phone, "+22670000000")
        with self.assertRaises(NotFoundError):
            self.db.get_user_by_id(new_object_id())
        with self.assertRaises(ValidationError):
            self.db.get_user_by_id("not-an-id")

    def test_set_entitlement_is_conditional(self):
        user = self.db.set_entitlement(self.user.id, HARDWARE, True)
        self.assertTrue(user.is_informatique_hardware)
        with self.assertRaises(AlreadyInState):
            self.db.set_entitlement(self.user.id, HARDWARE, True)

        user = self.db.set_entitlement(self.user.id, HARDWARE, True, only_if_changed=False)
        self.assertTrue(user.is_informatique_hardware)

        user = self.db.set_entitlement(self.user.id, HARDWARE, False)
        self.assertFalse(user.is_informatique_hardware)

    def test_set_entitlement_errors(self):
        with self.assertRaises(NotFoundError):
            self.db.set_entitlement(new_object_id(), HARDWARE, True)
        with self.assertRaises(InvalidKey):
            self.db.set_entitlement(self.user.id, EntitlementKey("Marketing", "Hardware"), True)

    def test_otp(self):
        now = datetime.utcnow()
        self.db.set_otp(self.user.id, "123456", now + timedelta(minutes=5))
        self.assertIsNotNone(self.db.find_user_by_valid_otp("+22670000000", "123456"))
        self.assertIsNone(self.db.find_user_by_valid_otp("+22670000000", "654321"))
        self.assertIsNone(
            self.db.find_user_by_valid_otp("+22670000000", "123456", now=now + timedelta(minutes=6))
        )

        self.assertEqual(self.db.clear_expired_otps(now=now + timedelta(minutes=6)), 1)
        self.assertIsNone(self.db.get_user_by_phone("+22670000000").otp)

    def test_update_password_consumes_otp(self):
        self.db.set_otp(self.user.id, "123456", datetime.utcnow() + timedelta(minutes=5))
        self.db.update_password(self.user.id, "new-hash")
        user = self.db.get_user_by_phone("+22670000000")
        self.assertEqual(user.password_hash, "new-hash")
        self.assertIsNone(user.otp)
        self.assertIsNone(user.otp_expires_at)

    def test_videos(self):
        video = self.db.create_video("Intro", "Informatique", "Hardware", True, "", "v1", "i1")
        self.db.create_video("Reseaux", "Marketing", None, False, "desc", "v2", "i2")
        self.assertEqual(self.db.count_videos(), 2)
        self.assertEqual(len(self.db.list_videos(category="Informatique")), 1)
        self.assertEqual(self.db.get_video_by_file("v1").id, video.id)

        updated = self.db.update_video(video.id, title="Intro 2")
        self.assertEqual(updated.title, "Intro 2")
        self.assertEqual(updated.part, "Hardware")
        self.assertIsNone(self.db.update_video(video.id, part=None).part)

        self.db.delete_video(video.id)
        with self.assertRaises(NotFoundError):
            self.db.get_video(video.id)

    def test_settings(self):
        self.assertFalse(self.db.get_setting("allowScreenCapture", False))
        self.db.set_setting("allowScreenCapture", True)
        self.assertTrue(self.db.get_setting("allowScreenCapture"))


class TestApprovals(unittest.TestCase):
    def setUp(self):
        fields = {key.field: False for key in ALL_KEYS}
        self.user = SimpleNamespace(id=new_object_id(), name="Awa <Kaboré>", phone="+22670000000", **fields)

    def test_registration_request(self):
        text, rows = registration_request(self.user)
        self.assertIn("Awa &lt;Kaboré&gt;", text)
        self.assertIn("30 000 FCFA", text)
        self.assertEqual(len(rows), len(ALL_KEYS))
        for (approve_text, approve), (cancel_text, cancel) in rows:
            self.assertTrue(approve.startswith("validate_"))
            self.assertTrue(cancel.startswith("cancel_"))
            self.assertTrue(approve.endswith(self.user.id))

    def test_payment_review(self):
        text, rows = payment_review(self.user, HARDWARE, "DEP-42", "ligne", "30000")
        self.assertIn("DEP-42", text)
        self.assertIn("Informatique - Hardware", text)
        self.assertEqual(rows, [[
            ("✅ Informatique - Hardware", f"validate_Informatique_Hardware_{self.user.id}"),
            ("❌ Informatique - Hardware", f"cancel_Informatique_Hardware_{self.user.id}"),
        ]])

    def test_console_state_toggles(self):
        self.user.is_informatique_hardware = True
        text, rows = console_state(self.user)
        buttons = dict(row[0] for row in rows)
        self.assertEqual(
            buttons["Informatique - Hardware : ✅ activé"],
            f"cancel_Informatique_Hardware_{self.user.id}"
        )
        self.assertEqual(
            buttons["Informatique - Software : ❌ désactivé"],
            f"validate_Informatique_Software_{self.user.id}"
        )
        self.assertIn("Informatique - Hardware : ✅ activé", text)


class TestAdminBot(TempDatabaseMixin, unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.make_database()
        self.user = self.db.create_user("Awa", "+22670000000", "hash")
        self.whatsapp = Mock()
        self.whatsapp.send = AsyncMock(return_value=SendStatus.OK)
        self.cache = CacheManager()
        self.admin_bot = AdminBot(self.db, self.whatsapp, self.cache, bot=AsyncMock())

    def make_update(self, data, chat_id=ADMIN_CHAT_ID):
        query = Mock()
        query.data = data
        query.answer = AsyncMock()
        query.edit_message_text = AsyncMock()
        update = Mock()
        update.effective_chat.id = chat_id
        update.callback_query = query
        return update, query

    async def click(self, data, chat_id=ADMIN_CHAT_ID):
        update, query = self.make_update(data, chat_id)
        await self.admin_bot.handle_entitlement_callback(update, Mock())
        return query

    def answer_text(self, query):
        return query.answer.call_args.args[0]

    def rendered_buttons(self, query):
        markup = query.edit_message_text.call_args.kwargs["reply_markup"]
        return {button.text: button.callback_data for row in markup.inline_keyboard for button in row}

    async def test_approve_then_repeat(self):
        """First click grants and notifies, the repeat only answers"""
        data = f"validate_Informatique_Hardware_{self.user.id}"
        await self.cache.set("vip_status_+22670000000", [])

        query = await self.click(data)
        self.assertTrue(self.db.get_user_by_id(self.user.id).is_informatique_hardware)
        self.assertIn("validée", self.answer_text(query))
        buttons = self.rendered_buttons(query)
        self.assertEqual(
            buttons["Informatique - Hardware : ✅ activé"],
            f"cancel_Informatique_Hardware_{self.user.id}"
        )
        self.whatsapp.send.assert_awaited_once()
        self.assertEqual(self.whatsapp.send.call_args.args[0], "+22670000000")
        self.assertIsNone(await self.cache.get("vip_status_+22670000000"))

        query = await self.click(data)
        self.assertIn("déjà activée", self.answer_text(query))
        query.edit_message_text.assert_not_awaited()
        self.assertEqual(self.whatsapp.send.await_count, 1)

    async def test_cancel_revokes_one_key(self):
        self.db.set_entitlement(self.user.id, HARDWARE, True)
        self.db.set_entitlement(self.user.id, SOFTWARE, True)

        query = await self.click(f"cancel_Informatique_Hardware_{self.user.id}")
        user = self.db.get_user_by_id(self.user.id)
        self.assertFalse(user.is_informatique_hardware)
        self.assertTrue(user.is_informatique_software)
        self.assertIn("désactivée", self.answer_text(query))
        self.whatsapp.send.assert_awaited_once()

    async def test_cancel_unpaid(self):
        query = await self.click(f"cancel_GSM_Software_{self.user.id}")
        self.assertIn("déjà désactivée", self.answer_text(query))
        self.whatsapp.send.assert_not_awaited()

    async def test_invalid_callback(self):
        for data in (
            f"validate_Marketing_Hardware_{self.user.id}",
            "validate_Informatique_Hardware_nothex",
            "something_else",
        ):
            query = await self.click(data)
            self.assertEqual(self.answer_text(query), "❌ Requête invalide")
        self.assertFalse(any(state_of(self.db.get_user_by_id(self.user.id)).values()))
        self.whatsapp.send.assert_not_awaited()

    async def test_unknown_user(self):
        query = await self.click(f"validate_Informatique_Hardware_{new_object_id()}")
        self.assertEqual(self.answer_text(query), "❌ Utilisateur introuvable")
        self.whatsapp.send.assert_not_awaited()

    async def test_foreign_chat_denied(self):
        query = await self.click(f"validate_Informatique_Hardware_{self.user.id}", chat_id=ADMIN_CHAT_ID + 1)
        self.assertEqual(self.answer_text(query), "⛔️ Accès refusé.")
        self.assertFalse(self.db.get_user_by_id(self.user.id).is_informatique_hardware)

    async def test_racing_approvals_notify_once(self):
        """A click computed from a stale read loses the conditional write"""
        stale = self.db.get_user_by_id(self.user.id)
        await self.click(f"validate_Informatique_Hardware_{self.user.id}")

        _, query = self.make_update(None)
        event = CallbackEvent(Action.APPROVE, HARDWARE, self.user.id)
        with patch.object(self.db, "get_user_by_id", return_value=stale):
            await self.admin_bot.process_event(query, event)

        self.assertIn("déjà activée", self.answer_text(query))
        self.assertEqual(self.whatsapp.send.await_count, 1)

    async def test_concurrent_clicks(self):
        data = f"validate_Informatique_Hardware_{self.user.id}"
        await asyncio.gather(self.click(data), self.click(data))
        self.assertEqual(self.whatsapp.send.await_count, 1)

    async def test_notification_unavailable_still_grants(self):
        self.whatsapp.send.return_value = SendStatus.UNAVAILABLE
        query = await self.click(f"validate_GSM_Hardware_{self.user.id}")
        self.assertTrue(self.db.get_user_by_id(self.user.id).is_gsm_hardware)
        self.assertIn("validée", self.answer_text(query))

    async def test_render_failure_still_notifies(self):
        update, query = self.make_update(f"validate_GSM_Hardware_{self.user.id}")
        query.edit_message_text.side_effect = BadRequest("Message is not modified")
        await self.admin_bot.handle_entitlement_callback(update, Mock())
        self.whatsapp.send.assert_awaited_once()

    async def test_console_timeout_still_notifies(self):
        """A committed grant reaches the user even when Telegram times out"""
        update, query = self.make_update(f"validate_Informatique_Hardware_{self.user.id}")
        query.edit_message_text.side_effect = TimedOut()
        await self.admin_bot.handle_entitlement_callback(update, Mock())
        self.assertTrue(self.db.get_user_by_id(self.user.id).is_informatique_hardware)
        self.whatsapp.send.assert_awaited_once()

        query = await self.click(f"validate_Informatique_Hardware_{self.user.id}")
        self.assertIn("déjà activée", self.answer_text(query))
        self.assertEqual(self.whatsapp.send.await_count, 1)

    async def test_expired_callback_still_notifies(self):
        update, query = self.make_update(f"cancel_Informatique_Hardware_{self.user.id}")
        self.db.set_entitlement(self.user.id, HARDWARE, True)
        query.answer.side_effect = TimedOut()
        await self.admin_bot.handle_entitlement_callback(update, Mock())
        self.assertFalse(self.db.get_user_by_id(self.user.id).is_informatique_hardware)
        query.edit_message_text.assert_awaited_once()
        self.whatsapp.send.assert_awaited_once()

    async def test_approve_cancel_approve_through_console(self):
        for action in ("validate", "cancel", "validate"):
            await self.click(f"{action}_Informatique_Hardware_{self.user.id}")

        state = state_of(self.db.get_user_by_id(self.user.id))
        self.assertTrue(state[HARDWARE])
        self.assertEqual([key for key, granted in state.items() if granted], [HARDWARE])
        self.assertEqual(self.whatsapp.send.await_count, 3)

    async def test_store_failure_answers_error(self):
        with patch.object(self.db, "set_entitlement", side_effect=RuntimeError("disk full")):
            query = await self.click(f"validate_GSM_Hardware_{self.user.id}")
        self.assertEqual(self.answer_text(query), "❌ Erreur lors de la mise à jour du statut VIP")
        self.whatsapp.send.assert_not_awaited()

    async def test_submit_payment(self):
        submitted = await self.admin_bot.submit_payment(self.user, HARDWARE, "DEP-1", "ligne", "30000")
        self.assertTrue(submitted)
        self.admin_bot.bot.send_message.assert_awaited_once()
        markup = self.admin_bot.bot.send_message.call_args.kwargs["reply_markup"]
        self.assertEqual(len(markup.inline_keyboard), 1)

        granted = self.db.set_entitlement(self.user.id, HARDWARE, True)
        submitted = await self.admin_bot.submit_payment(granted, HARDWARE, "DEP-2", "ligne", "30000")
        self.assertFalse(submitted)
        self.assertEqual(self.admin_bot.bot.send_message.await_count, 1)

    async def test_registration_request(self):
        await self.admin_bot.send_registration_request(self.user)
        args = self.admin_bot.bot.send_message.call_args
        self.assertEqual(args.args[0], ADMIN_CHAT_ID)
        self.assertEqual(len(args.kwargs["reply_markup"].inline_keyboard), len(ALL_KEYS))

    async def test_show_user_command(self):
        self.db.set_entitlement(self.user.id, HARDWARE, True)
        update = Mock()
        update.effective_chat.id = ADMIN_CHAT_ID
        update.message.reply_text = AsyncMock()
        await self.admin_bot.show_user(update, Mock(args=["22670000000"]))

        markup = update.message.reply_text.call_args.kwargs["reply_markup"]
        texts = [row[0].text for row in markup.inline_keyboard]
        self.assertIn("Informatique - Hardware : ✅ activé", texts)

    async def test_pairing_qr(self):
        await self.admin_bot.send_pairing_qr(b"%PDF-1.4")
        kwargs = self.admin_bot.bot.send_document.call_args.kwargs
        self.assertEqual(kwargs["filename"], "whatsapp_qr.pdf")


class TestWhatsAppChannel(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.on_qr = AsyncMock()
        self.channel = WhatsAppChannel("http://gateway", "cursus-session", on_qr=self.on_qr)

    def test_chat_id(self):
        self.assertEqual(chat_id_for("+226 70 00 00 00"), "22670000000@c.us")

    async def test_send_when_disconnected(self):
        with patch.object(self.channel, "_send_text", new=AsyncMock()) as send_text:
            self.assertEqual(await self.channel.send("+22670000000", "hello"), SendStatus.UNAVAILABLE)
        send_text.assert_not_awaited()

    async def test_send_when_ready(self):
        self.channel.state = READY
        with patch.object(self.channel, "_send_text", new=AsyncMock()) as send_text:
            self.assertEqual(await self.channel.send("+22670000000", "hello"), SendStatus.OK)
        send_text.assert_awaited_once_with("22670000000@c.us", "hello")

    async def test_send_failure(self):
        self.channel.state = READY
        failing = AsyncMock(side_effect=ChannelUnavailable("timeout"))
        with patch.object(self.channel, "_send_text", new=failing):
            self.assertEqual(await self.channel.send("+22670000000", "hello"), SendStatus.UNAVAILABLE)

    async def test_refresh_state(self):
        with patch.object(self.channel, "_request", new=AsyncMock(return_value={"status": "WORKING"})):
            self.assertEqual(await self.channel.refresh_state(), READY)
        self.assertTrue(self.channel.ready)

    async def test_qr_relayed_once(self):
        request = AsyncMock(return_value={"value": "2@abc,def"})
        with patch.object(self.channel, "_request", new=request), \
                patch("whatsapp.render_qr_pdf", return_value=b"%PDF") as render:
            await self.channel._relay_qr()
            await self.channel._relay_qr()
        render.assert_called_once_with("2@abc,def")
        self.on_qr.assert_awaited_once_with(b"%PDF")

    async def test_malformed_gateway_reply(self):
        """A JSON-labelled reply that does not parse counts as undelivered"""
        response = Mock(content_type="application/json")
        response.json = AsyncMock(side_effect=json.JSONDecodeError("Expecting property name", "{not json", 1))
        context = AsyncMock()
        context.__aenter__.return_value = response
        context.__aexit__.return_value = False
        self.channel._http = Mock()
        self.channel._http.request.return_value = context
        self.channel.state = READY

        self.assertEqual(await self.channel.send("+22670000000", "hello"), SendStatus.UNAVAILABLE)

    async def test_request_without_connect(self):
        with self.assertRaises(ChannelUnavailable):
            await self.channel._send_text("22670000000@c.us", "hello")


class TestPairing(unittest.TestCase):
    def test_render_qr_pdf(self):
        pdf = render_qr_pdf("2@abc,def")
        self.assertTrue(pdf.startswith(b"%PDF"))


class TestSecurity(unittest.TestCase):
    def test_normalize_phone(self):
        self.assertEqual(normalize_phone(" 22670000000 "), "+22670000000")
        self.assertEqual(normalize_phone("+22670000000"), "+22670000000")
        self.assertTrue(validate_input("+22670000000", "phone"))
        self.assertFalse(validate_input("+226-700", "phone"))

    def test_generate_otp(self):
        now = datetime(2024, 1, 1, 12, 0)
        otp, expires_at = generate_otp(now)
        self.assertTrue(validate_input(otp, "otp"))
        self.assertEqual(expires_at, now + timedelta(minutes=5))

    def test_login_attempts(self):
        security = SecurityManager()
        for _ in range(4):
            self.assertTrue(security.check_login_attempts("+22670000000"))
        self.assertFalse(security.check_login_attempts("+22670000000"))
        self.assertTrue(security.is_blocked("+22670000000"))
        security.reset_login_attempts("+22670000000")
        self.assertFalse(security.is_blocked("+22670000000"))


class TestCacheManager(unittest.IsolatedAsyncioTestCase):
    async def test_get_set(self):
        cache = CacheManager()
        await cache.set("all_users", [1, 2])
        self.assertEqual(await cache.get("all_users"), [1, 2])
        self.assertIsNone(await cache.get("missing"))
        self.assertEqual(cache.stats(), {"keys": 1, "hits": 1, "misses": 1})

    async def test_invalidate_user(self):
        cache = CacheManager()
        await cache.set("vip_status_+22670000000", ["GSM Hardware"])
        await cache.set("all_users", [])
        await cache.set("videos_1_20_all_all", [])
        await cache.invalidate_user("+22670000000")
        self.assertIsNone(await cache.get("vip_status_+22670000000"))
        self.assertIsNone(await cache.get("all_users"))
        self.assertIsNotNone(await cache.get("videos_1_20_all_all"))

    async def test_clear_expired(self):
        cache = CacheManager()
        await cache.set("old", 1)
        cache.memory_cache["old"]["expire_time"] = datetime.utcnow() - timedelta(seconds=1)
        await cache.set("fresh", 2)
        self.assertEqual(await cache.clear_expired(), 1)
        self.assertEqual(await cache.get("fresh"), 2)


class TestLocalBlobStore(unittest.TestCase):
    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.root, ignore_errors=True)
        self.blobs = LocalBlobStore(self.root, base_url="https://api.example.com/")

    def test_put_get_delete(self):
        ref = self.blobs.put(VIDEOS, "intro.mp4", b"video-bytes")
        self.assertEqual(ref.content_type, "video/mp4")
        self.assertEqual(ref.size, 11)
        self.assertEqual(ref.url, f"https://api.example.com/api/video/{ref.id}")
        self.assertEqual(self.blobs.get(VIDEOS, ref.id), ref)
        with open(self.blobs.path(VIDEOS, ref.id), "rb") as f:
            self.assertEqual(f.read(), b"video-bytes")

        self.assertEqual([r.id for r in self.blobs.list_folder(VIDEOS)], [ref.id])
        self.assertTrue(self.blobs.delete(VIDEOS, ref.id))
        self.assertFalse(self.blobs.delete(VIDEOS, ref.id))
        with self.assertRaises(NotFoundError):
            self.blobs.get(VIDEOS, ref.id)

    def test_folders_are_separate(self):
        ref = self.blobs.put(IMAGES, "cover.png", b"png")
        with self.assertRaises(NotFoundError):
            self.blobs.get(VIDEOS, ref.id)
        with self.assertRaises(ValidationError):
            self.blobs.put("music", "song.mp3", b"")

    def test_path_traversal(self):
        with self.assertRaises(NotFoundError):
            self.blobs.get(VIDEOS, "../secret")


class TestMaintenance(unittest.IsolatedAsyncioTestCase):
    async def test_cleanup(self):
        db = Mock()
        db.clear_expired_otps.return_value = 2
        cache = Mock()
        cache.clear_expired = AsyncMock(return_value=3)
        self.assertEqual(await CleanupManager(db, cache).run_cleanup(), (2, 3))

    @patch("maintenance.psutil")
    async def test_monitor_alerts(self, mock_psutil):
        mock_psutil.disk_usage.return_value = Mock(percent=95)
        mock_psutil.virtual_memory.return_value = Mock(percent=40)
        alert = AsyncMock()
        monitor = SystemMonitor(Mock(), Mock(ready=True), alert=alert)

        warnings = await monitor.check_system_health()
        self.assertEqual(len(warnings), 1)
        alert.assert_awaited_once()

    @patch("maintenance.psutil")
    async def test_monitor_quiet(self, mock_psutil):
        mock_psutil.disk_usage.return_value = Mock(percent=10)
        mock_psutil.virtual_memory.return_value = Mock(percent=10)
        alert = AsyncMock()
        self.assertEqual(await SystemMonitor(Mock(), Mock(ready=True), alert=alert).check_system_health(), [])
        alert.assert_not_awaited()


if __name__ == '__main__':
    unittest.main()
