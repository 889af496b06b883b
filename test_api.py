import os
import shutil
import tempfile
import threading
from unittest.mock import AsyncMock, Mock, patch

from aiohttp import FormData
from aiohttp.test_utils import AioHTTPTestCase
from telegram.error import TelegramError

from api import create_app
from bot import AdminBot
from cache_manager import CacheManager
from database import Database
from entitlements import EntitlementKey
from storage import LocalBlobStore
from whatsapp import READY, SendStatus

PHONE = "+22670000000"
HARDWARE = EntitlementKey("Informatique", "Hardware")


class TestHttpApi(AioHTTPTestCase):
    async def get_application(self):
        self.tmp_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmp_dir, ignore_errors=True)
        self.db = Database(f"sqlite:///{os.path.join(self.tmp_dir, 'api.db')}")
        self.addCleanup(self.db.engine.dispose)

        self.blobs = LocalBlobStore(os.path.join(self.tmp_dir, "media"))
        self.cache = CacheManager()
        self.whatsapp = Mock(state=READY)
        self.whatsapp.send = AsyncMock(return_value=SendStatus.OK)
        self.admin_bot = AdminBot(self.db, self.whatsapp, self.cache, bot=AsyncMock())
        return create_app(self.db, self.admin_bot, self.whatsapp, self.cache, self.blobs)

    async def register(self, phone=PHONE, password="secret1"):
        return await self.client.post("/register", json={"name": "Awa", "phone": phone, "password": password})

    async def grant(self, phone, key):
        user = self.db.get_user_by_phone(phone)
        self.db.set_entitlement(user.id, key, True)
        await self.cache.invalidate_user(phone)

    # Accounts

    async def test_register(self):
        resp = await self.register("22670000000")
        self.assertEqual(resp.status, 201)
        self.assertIsNotNone(self.db.get_user_by_phone(PHONE))
        self.admin_bot.bot.send_message.assert_awaited_once()
        self.whatsapp.send.assert_awaited_once()
        self.assertEqual(self.whatsapp.send.call_args.args[0], PHONE)

        resp = await self.register()
        self.assertEqual(resp.status, 400)
        self.assertEqual((await resp.json())["message"], "Utilisateur déjà existant")

    async def test_register_console_down(self):
        self.admin_bot.bot.send_message.side_effect = TelegramError("network")
        resp = await self.register()
        self.assertEqual(resp.status, 201)

    async def test_register_missing_fields(self):
        resp = await self.client.post("/register", json={"phone": PHONE})
        self.assertEqual(resp.status, 400)
        resp = await self.client.post("/register", data="not json")
        self.assertEqual(resp.status, 400)

    async def test_login(self):
        await self.register()
        await self.grant(PHONE, HARDWARE)

        resp = await self.client.post("/api/login", json={"phone": PHONE, "password": "secret1"})
        self.assertEqual(resp.status, 200)
        body = await resp.json()
        self.assertEqual(body["user"]["phone"], PHONE)
        self.assertTrue(body["vipStatus"]["informatiqueHardware"])
        self.assertFalse(body["vipStatus"]["gsmSoftware"])

        resp = await self.client.post("/api/login", json={"phone": "+22679999999", "password": "x"})
        self.assertEqual(resp.status, 404)

    async def test_login_blocked_after_failures(self):
        await self.register()
        statuses = []
        for _ in range(6):
            resp = await self.client.post("/api/login", json={"phone": PHONE, "password": "wrong"})
            statuses.append(resp.status)
        self.assertEqual(statuses, [401, 401, 401, 401, 429, 429])

    async def test_paiement(self):
        await self.register()
        payment = {
            "phone": PHONE, "numDepot": "DEP-42", "domaine": "Informatique",
            "part": "Hardware", "mode": "ligne", "price": "30000",
        }
        self.admin_bot.bot.send_message.reset_mock()

        resp = await self.client.post("/api/paiement", json=payment)
        self.assertEqual(resp.status, 200)
        self.assertFalse((await resp.json())["isPaid"])
        self.admin_bot.bot.send_message.assert_awaited_once()

        await self.grant(PHONE, HARDWARE)
        resp = await self.client.post("/api/paiement", json=payment)
        self.assertTrue((await resp.json())["isPaid"])
        self.admin_bot.bot.send_message.assert_awaited_once()

    async def test_paiement_rejected(self):
        await self.register()
        base = {
            "phone": PHONE, "numDepot": "DEP-42", "domaine": "Marketing",
            "part": "Hardware", "mode": "ligne", "price": "10000",
        }
        resp = await self.client.post("/api/paiement", json=base)
        self.assertEqual(resp.status, 400)
        resp = await self.client.post("/api/paiement", json=dict(base, part="Social", mode="cheque"))
        self.assertEqual(resp.status, 400)
        resp = await self.client.post("/api/paiement", json=dict(base, part="Social", phone="+22679999999"))
        self.assertEqual(resp.status, 404)

    async def test_paiement_non_string_key(self):
        await self.register()
        payment = {
            "phone": PHONE, "numDepot": "DEP-42", "domaine": ["Informatique"],
            "part": "Hardware", "mode": "ligne", "price": "30000",
        }
        resp = await self.client.post("/api/paiement", json=payment)
        self.assertEqual(resp.status, 400)
        resp = await self.client.post("/api/paiement", json=dict(payment, domaine="Informatique", part={"x": 1}))
        self.assertEqual(resp.status, 400)

    async def test_vip_status(self):
        resp = await self.client.get("/api/vip-status")
        self.assertEqual(resp.status, 400)
        resp = await self.client.get("/api/vip-status", params={"phone": PHONE})
        self.assertEqual(resp.status, 404)

        await self.register()
        resp = await self.client.get("/api/vip-status", params={"phone": "22670000000"})
        self.assertEqual((await resp.json())["vipDomains"], [])

        await self.grant(PHONE, HARDWARE)
        resp = await self.client.get("/api/vip-status", params={"phone": PHONE})
        self.assertEqual((await resp.json())["vipDomains"], ["Informatique Hardware"])

    async def test_password_reset(self):
        await self.register()
        resp = await self.client.post("/api/forgot-password", json={"phone": PHONE})
        self.assertEqual(resp.status, 200)
        otp = self.db.get_user_by_phone(PHONE).otp
        self.assertIn(otp, self.whatsapp.send.call_args.args[1])

        resp = await self.client.post("/api/verify-otp", json={"phone": PHONE, "otp": "wrong"})
        self.assertEqual(resp.status, 400)
        resp = await self.client.post("/api/verify-otp", json={"phone": PHONE, "otp": otp})
        self.assertEqual(resp.status, 200)

        resp = await self.client.post(
            "/api/reset-password", json={"phone": PHONE, "otp": otp, "newPassword": "changed1"}
        )
        self.assertEqual(resp.status, 200)
        self.assertIsNone(self.db.get_user_by_phone(PHONE).otp)

        resp = await self.client.post("/api/login", json={"phone": PHONE, "password": "changed1"})
        self.assertEqual(resp.status, 200)
        resp = await self.client.post(
            "/api/reset-password", json={"phone": PHONE, "otp": otp, "newPassword": "again1"}
        )
        self.assertEqual(resp.status, 400)

    async def test_forgot_password_channel_down(self):
        await self.register()
        self.whatsapp.send.return_value = SendStatus.UNAVAILABLE
        resp = await self.client.post("/api/forgot-password", json={"phone": PHONE})
        self.assertEqual(resp.status, 503)

    async def test_users(self):
        await self.register()
        resp = await self.client.get("/api/users")
        body = await resp.json()
        self.assertEqual(body["count"], 1)
        self.assertFalse(body["users"][0]["status"]["informatiqueHardware"])

        await self.grant(PHONE, HARDWARE)
        body = await (await self.client.get("/api/users")).json()
        self.assertTrue(body["users"][0]["status"]["informatiqueHardware"])

    async def test_screen_capture(self):
        resp = await self.client.get("/api/screen-capture")
        self.assertFalse((await resp.json())["allowScreenCapture"])

        resp = await self.client.post("/api/screen-capture", json={"allowScreenCapture": "yes"})
        self.assertEqual(resp.status, 400)
        resp = await self.client.post("/api/screen-capture", json={"allowScreenCapture": True})
        self.assertEqual(resp.status, 200)
        resp = await self.client.get("/api/screen-capture")
        self.assertTrue((await resp.json())["allowScreenCapture"])

    # Videos

    async def add_video(self, is_paid="true", part="Hardware"):
        form = FormData()
        form.add_field("title", "Assemblage PC")
        form.add_field("categoryId", "Informatique")
        form.add_field("part", part)
        form.add_field("isPaid", is_paid)
        form.add_field("description", "Monter un PC pas à pas")
        form.add_field("videoFile", b"0123456789", filename="intro.mp4", content_type="video/mp4")
        form.add_field("imageFile", b"PNGDATA", filename="cover.png", content_type="image/png")
        resp = await self.client.post("/api/add-video", data=form)
        self.assertEqual(resp.status, 201)
        return self.db.get_video((await resp.json())["video"]["id"])

    async def test_add_and_list_videos(self):
        video = await self.add_video()
        resp = await self.client.get("/api/videos")
        categories = await resp.json()
        self.assertEqual(categories[0]["id"], "Informatique")
        entry = categories[0]["videos"][0]
        self.assertTrue(entry["isPaid"])
        self.assertEqual(entry["details"]["video"], f"/api/video/{video.video_file_id}")

        resp = await self.client.get("/api/videos", params={"page": "zero"})
        self.assertEqual(resp.status, 400)

    async def test_add_video_requires_files(self):
        form = FormData()
        form.add_field("title", "Sans fichier")
        form.add_field("categoryId", "Informatique")
        resp = await self.client.post("/api/add-video", data=form)
        self.assertEqual(resp.status, 400)

    async def test_paid_video_access(self):
        video = await self.add_video()
        url = f"/api/video/{video.video_file_id}"
        await self.register()

        self.assertEqual((await self.client.get(url)).status, 403)
        self.assertEqual((await self.client.get(url, params={"phone": PHONE})).status, 403)

        await self.grant(PHONE, HARDWARE)
        resp = await self.client.get(url, params={"phone": PHONE})
        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.read(), b"0123456789")

        resp = await self.client.get(url, params={"phone": PHONE}, headers={"Range": "bytes=0-3"})
        self.assertEqual(resp.status, 206)
        self.assertEqual(await resp.read(), b"0123")

    async def test_free_video_and_image(self):
        video = await self.add_video(is_paid="false")
        resp = await self.client.get(f"/api/video/{video.video_file_id}")
        self.assertEqual(resp.status, 200)

        resp = await self.client.get(f"/api/image/{video.image_file_id}")
        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.read(), b"PNGDATA")
        etag = resp.headers["ETag"]

        resp = await self.client.get(f"/api/image/{video.image_file_id}", headers={"If-None-Match": etag})
        self.assertEqual(resp.status, 304)

        resp = await self.client.get("/api/image/0123456789abcdef01234567")
        self.assertEqual(resp.status, 404)

    async def test_listing_carries_viewer(self):
        paid = await self.add_video()
        free = await self.add_video(is_paid="false")
        await self.register()
        await self.grant(PHONE, HARDWARE)

        categories = await (await self.client.get("/api/videos", params={"phone": "22670000000"})).json()
        urls = {entry["id"]: entry["details"]["video"] for entry in categories[0]["videos"]}
        self.assertEqual(urls[paid.id], f"/api/video/{paid.video_file_id}?phone=%2B22670000000")
        self.assertEqual(urls[free.id], f"/api/video/{free.video_file_id}")

        resp = await self.client.get(urls[paid.id])
        self.assertEqual(resp.status, 200)

        categories = await (await self.client.get("/api/videos")).json()
        urls = {entry["id"]: entry["details"]["video"] for entry in categories[0]["videos"]}
        self.assertEqual(urls[paid.id], f"/api/video/{paid.video_file_id}")

    async def test_upload_runs_off_loop(self):
        threads = []
        original_put = self.blobs.put

        def recording_put(*args, **kwargs):
            threads.append(threading.get_ident())
            return original_put(*args, **kwargs)

        with patch.object(self.blobs, "put", side_effect=recording_put):
            await self.add_video()
        self.assertEqual(len(threads), 2)
        self.assertNotIn(threading.get_ident(), threads)

    async def test_update_video_part(self):
        video = await self.add_video()

        async def update(**fields):
            form = FormData()
            for name, value in fields.items():
                form.add_field(name, value)
            resp = await self.client.put(f"/api/update-video/{video.id}", data=form)
            self.assertEqual(resp.status, 200)
            return self.db.get_video(video.id)

        moved = await update(categoryId="GSM")
        self.assertEqual((moved.category_id, moved.part), ("GSM", "Hardware"))
        moved = await update(categoryId="Marketing")
        self.assertEqual((moved.category_id, moved.part), ("Marketing", None))
        moved = await update(part="Social")
        self.assertEqual(moved.part, "Social")
        moved = await update(part="")
        self.assertIsNone(moved.part)
        self.assertEqual(moved.title, "Assemblage PC")

        form = FormData()
        form.add_field("part", "Hardware")
        resp = await self.client.put(f"/api/update-video/{video.id}", data=form)
        self.assertEqual(resp.status, 400)

    async def test_update_and_delete_video(self):
        video = await self.add_video()
        form = FormData()
        form.add_field("title", "Assemblage PC (v2)")
        form.add_field("isPaid", "false")
        form.add_field("imageFile", b"NEWPNG", filename="cover2.png", content_type="image/png")
        resp = await self.client.put(f"/api/update-video/{video.id}", data=form)
        self.assertEqual(resp.status, 200)

        updated = self.db.get_video(video.id)
        self.assertEqual(updated.title, "Assemblage PC (v2)")
        self.assertFalse(updated.is_paid)
        self.assertEqual(updated.video_file_id, video.video_file_id)
        self.assertNotEqual(updated.image_file_id, video.image_file_id)
        self.assertEqual((await self.client.get(f"/api/image/{video.image_file_id}")).status, 404)

        resp = await self.client.delete(f"/api/delete-video/{video.id}")
        self.assertEqual(resp.status, 200)
        self.assertEqual((await self.client.get(f"/api/video/{video.video_file_id}")).status, 404)
        resp = await self.client.delete(f"/api/delete-video/{video.id}")
        self.assertEqual(resp.status, 404)

    # Monitoring

    async def test_health_and_metrics(self):
        resp = await self.client.get("/api/health")
        body = await resp.json()
        self.assertEqual(body["status"], "OK")
        self.assertEqual(body["database"], "Connected")
        self.assertEqual(body["whatsapp"], READY)

        await self.register()
        body = await (await self.client.get("/api/metrics")).json()
        self.assertEqual(body["users"]["total"], 1)
        self.assertEqual(body["videos"]["total"], 0)
