"""HTTP API used by the mobile application.

Users register, log in, report payments and reset their password here; the
admin side of those flows goes through :class:`bot.AdminBot` and the
WhatsApp channel. Videos and cover images are streamed from the blob store.
"""
import asyncio
import logging
import time
from datetime import datetime
from urllib.parse import urlencode

from aiohttp import web
from telegram.error import TelegramError

from advanced_config import CACHE_SETTINGS, SECURITY_SETTINGS, UPLOAD_SETTINGS
from approvals import welcome_text
from config import MESSAGES, OTP_TTL_MINUTES, PAYMENT_MODES
from entitlements import (
    ALL_KEYS, DOMAINS, ENTITLEMENT_FIELDS, EntitlementKey, can_view, entitlement_key, granted_keys,
    state_of
)
from errors import ChannelUnavailable, InvalidKey, NotFoundError, StoreError, ValidationError
from maintenance import system_info
from security import (
    SecurityManager, generate_otp, get_password_hash, normalize_phone, validate_input, verify_password
)
from storage import IMAGES, VIDEOS
from whatsapp import SendStatus

logger = logging.getLogger(__name__)

DB = web.AppKey("db")
ADMIN_BOT = web.AppKey("admin_bot")
WHATSAPP = web.AppKey("whatsapp")
CACHE = web.AppKey("cache")
BLOBS = web.AppKey("blobs")
SECURITY = web.AppKey("security")
STARTED_AT = web.AppKey("started_at", float)

SCREEN_CAPTURE_SETTING = "allowScreenCapture"


def status_key(key: EntitlementKey) -> str:
    """Entitlement name in API payloads, e.g. informatiqueHardware"""
    return f"{key.domain.lower()}{key.part}"


def vip_status(user):
    return {status_key(key): granted for key, granted in state_of(user).items()}


def _timestamp():
    return datetime.utcnow().isoformat() + "Z"


@web.middleware
async def error_middleware(request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ValidationError as e:
        logger.info(f"{request.method} {request.path}: {e}")
        return web.json_response({"message": str(e)}, status=400)
    except NotFoundError as e:
        return web.json_response({"message": str(e)}, status=404)
    except ChannelUnavailable as e:
        logger.warning(f"{request.method} {request.path}: {e}")
        return web.json_response({"message": str(e)}, status=503)
    except StoreError as e:
        logger.error(f"{request.method} {request.path}: {e}")
        return web.json_response({"message": "Erreur serveur"}, status=500)
    except Exception as e:
        logger.error(f"Unhandled error on {request.method} {request.path}: {e}", exc_info=True)
        return web.json_response(
            {"message": "Erreur interne du serveur", "timestamp": _timestamp()},
            status=500
        )


async def _json_body(request):
    try:
        data = await request.json()
    except ValueError:
        raise ValidationError("Corps de requête JSON invalide")
    if not isinstance(data, dict):
        raise ValidationError("Corps de requête JSON invalide")
    return data


def _require(data, *names):
    missing = [name for name in names if data.get(name) in (None, "")]
    if missing:
        raise ValidationError(f"Champs requis manquants : {', '.join(missing)}")
    return [data[name] for name in names]


def _phone(value):
    phone = normalize_phone(str(value))
    if not validate_input(phone, 'phone'):
        raise ValidationError("Numéro de téléphone invalide")
    return phone


def _user_by_phone(request, phone):
    user = request.app[DB].get_user_by_phone(phone)
    if user is None:
        raise NotFoundError("Utilisateur non trouvé")
    return user


def _int_param(request, name, default, minimum=1):
    value = request.query.get(name, default)
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Paramètre {name} invalide")
    if value < minimum:
        raise ValidationError(f"Paramètre {name} invalide")
    return value


# Accounts

async def register(request):
    data = await _json_body(request)
    name, phone, password = _require(data, "name", "phone", "password")
    name, password = str(name), str(password)
    phone = _phone(phone)
    if len(password) < SECURITY_SETTINGS["password_min_length"]:
        raise ValidationError("Mot de passe trop court")

    db = request.app[DB]
    if db.get_user_by_phone(phone) is not None:
        raise ValidationError("Utilisateur déjà existant")
    user = db.create_user(name.strip(), phone, get_password_hash(password))
    await request.app[CACHE].delete("all_users")
    logger.info(f"New user registered: {user.id} ({phone})")

    try:
        await request.app[ADMIN_BOT].send_registration_request(user)
    except TelegramError as e:
        # The admin can still reach the user with /user <phone>
        logger.error(f"Registration request for {phone} not posted: {e}")

    await request.app[WHATSAPP].send(phone, welcome_text(user))
    return web.json_response({"message": "En attente de validation VIP"}, status=201)


async def login(request):
    data = await _json_body(request)
    phone, password = _require(data, "phone", "password")
    phone = normalize_phone(str(phone))
    security = request.app[SECURITY]

    if security.is_blocked(phone):
        return web.json_response({"message": "Trop de tentatives, réessayez plus tard"}, status=429)

    user = _user_by_phone(request, phone)
    if not verify_password(str(password), user.password_hash):
        if not security.check_login_attempts(phone):
            return web.json_response({"message": "Trop de tentatives, réessayez plus tard"}, status=429)
        return web.json_response({"message": "Mot de passe incorrect"}, status=401)

    security.reset_login_attempts(phone)
    return web.json_response({
        "message": "Connexion réussie",
        "user": {"id": user.id, "name": user.name, "phone": user.phone},
        "vipStatus": vip_status(user),
    })


async def paiement(request):
    data = await _json_body(request)
    phone, reference, domain, part, mode, price = _require(
        data, "phone", "numDepot", "domaine", "part", "mode", "price"
    )
    try:
        key = entitlement_key(domain, part)
    except InvalidKey:
        raise ValidationError("Domaine ou partie invalide.")
    if mode not in PAYMENT_MODES:
        raise ValidationError("Mode de paiement invalide.")

    user = _user_by_phone(request, normalize_phone(str(phone)))
    submitted = await request.app[ADMIN_BOT].submit_payment(user, key, reference, mode, price)
    if not submitted:
        return web.json_response({"message": "Accès VIP déjà validé", "isPaid": True})
    return web.json_response({"message": "Paiement vérifié et notifié.", "isPaid": False})


async def get_vip_status(request):
    phone = request.query.get("phone")
    if not phone:
        raise ValidationError("Le numéro de téléphone est requis")
    phone = normalize_phone(phone)

    cache = request.app[CACHE]
    cache_key = f"vip_status_{phone}"
    domains = await cache.get(cache_key)
    if domains is None:
        user = _user_by_phone(request, phone)
        domains = [str(key) for key in granted_keys(user)]
        await cache.set(cache_key, domains, CACHE_SETTINGS["vip_status_ttl"])

    return web.json_response({"message": "Statuts VIP récupérés avec succès", "vipDomains": domains})


async def forgot_password(request):
    data = await _json_body(request)
    phone, = _require(data, "phone")
    phone = normalize_phone(str(phone))
    user = _user_by_phone(request, phone)

    otp, expires_at = generate_otp()
    request.app[DB].set_otp(user.id, otp, expires_at)
    status = await request.app[WHATSAPP].send(
        phone, MESSAGES["otp"].format(otp=otp, minutes=OTP_TTL_MINUTES)
    )
    if status is SendStatus.UNAVAILABLE:
        raise ChannelUnavailable("Service WhatsApp indisponible, réessayez plus tard.")
    return web.json_response({"message": "Code OTP envoyé avec succès."})


async def verify_otp(request):
    data = await _json_body(request)
    phone, otp = _require(data, "phone", "otp")
    if request.app[DB].find_user_by_valid_otp(normalize_phone(str(phone)), str(otp)) is None:
        raise ValidationError("Code OTP invalide ou expiré.")
    return web.json_response({"message": "Code OTP validé avec succès."})


async def reset_password(request):
    data = await _json_body(request)
    phone, otp, new_password = _require(data, "phone", "otp", "newPassword")
    phone = normalize_phone(str(phone))
    db = request.app[DB]

    user = db.find_user_by_valid_otp(phone, str(otp))
    if user is None:
        raise ValidationError("Code OTP invalide ou expiré.")
    new_password = str(new_password)
    if len(new_password) < SECURITY_SETTINGS["password_min_length"]:
        raise ValidationError("Mot de passe trop court")

    db.update_password(user.id, get_password_hash(new_password))
    request.app[SECURITY].reset_login_attempts(phone)
    await request.app[WHATSAPP].send(phone, MESSAGES["password_reset"])
    logger.info(f"Password reset for {phone}")
    return web.json_response({"message": "Mot de passe réinitialisé avec succès."})


async def list_users(request):
    cache = request.app[CACHE]
    users = await cache.get("all_users")
    if users is None:
        users = [
            {
                "id": user.id,
                "name": user.name,
                "phone": user.phone,
                "status": vip_status(user),
                "createdAt": user.created_at.isoformat() if user.created_at else None,
            }
            for user in request.app[DB].list_users()
        ]
        await cache.set("all_users", users, CACHE_SETTINGS["users_ttl"])
    return web.json_response({"success": True, "count": len(users), "users": users})


# Settings

async def get_screen_capture(request):
    allowed = request.app[DB].get_setting(SCREEN_CAPTURE_SETTING, False)
    return web.json_response({"allowScreenCapture": allowed})


async def set_screen_capture(request):
    data = await _json_body(request)
    allowed = data.get("allowScreenCapture")
    if not isinstance(allowed, bool):
        raise ValidationError("Le champ allowScreenCapture doit être un booléen")
    request.app[DB].set_setting(SCREEN_CAPTURE_SETTING, allowed)
    logger.info(f"Screen capture {'allowed' if allowed else 'blocked'}")
    return web.json_response({"message": "Paramètre mis à jour", "allowScreenCapture": allowed})


# Videos

def _video_category(category_id, part):
    if category_id not in DOMAINS:
        raise InvalidKey(f"Catégorie inconnue : {category_id}")
    if part:
        entitlement_key(category_id, part)


async def _store_upload(blobs, folder, field):
    """Copy an uploaded file into the blob store off the event loop"""
    data = await asyncio.to_thread(field.file.read)
    return await asyncio.to_thread(blobs.put, folder, field.filename or folder, data, field.content_type)


def _video_json(video, blobs):
    return {
        "id": video.id,
        "title": video.title,
        "isPaid": video.is_paid,
        "categoryId": video.category_id,
        "part": video.part,
        "image": blobs.url(IMAGES, video.image_file_id),
        "details": {
            "title": video.title,
            "video": blobs.url(VIDEOS, video.video_file_id),
            "description": video.description or "Pas de description",
        },
    }


def _with_viewer(categories, phone):
    """Add the viewer's phone to paid video URLs, which stream_video checks"""
    query = urlencode({"phone": phone})
    personalized = []
    for category in categories:
        videos = []
        for video in category["videos"]:
            if video["isPaid"]:
                details = dict(video["details"], video=f"{video['details']['video']}?{query}")
                video = dict(video, details=details)
            videos.append(video)
        personalized.append(dict(category, videos=videos))
    return personalized


async def add_video(request):
    form = await request.post()
    video_field = form.get("videoFile")
    image_field = form.get("imageFile")
    if not isinstance(video_field, web.FileField) or not isinstance(image_field, web.FileField):
        raise ValidationError("Les fichiers vidéo et image sont requis.")
    title, category_id = _require(form, "title", "categoryId")
    part = form.get("part") or None
    _video_category(category_id, part)

    blobs = request.app[BLOBS]
    video_ref = await _store_upload(blobs, VIDEOS, video_field)
    image_ref = await _store_upload(blobs, IMAGES, image_field)
    video = request.app[DB].create_video(
        title=title,
        category_id=category_id,
        part=part,
        is_paid=form.get("isPaid") == "true",
        description=form.get("description", ""),
        video_file_id=video_ref.id,
        image_file_id=image_ref.id
    )
    await request.app[CACHE].delete_prefix("videos_")
    logger.info(f"Video added: {video.id} ({title})")

    return web.json_response({
        "message": "Vidéo sauvegardée",
        "video": {"id": video.id, "title": video.title, "categoryId": video.category_id, "part": video.part},
    }, status=201)


async def list_videos(request):
    page = _int_param(request, "page", 1)
    limit = _int_param(request, "limit", UPLOAD_SETTINGS["page_size"])
    category = request.query.get("category")
    part = request.query.get("part")

    cache = request.app[CACHE]
    cache_key = f"videos_{page}_{limit}_{category or 'all'}_{part or 'all'}"
    categories = await cache.get(cache_key)
    if categories is None:
        blobs = request.app[BLOBS]
        grouped = {}
        for video in request.app[DB].list_videos(category, part, page, limit):
            entry = grouped.setdefault(
                video.category_id, {"id": video.category_id, "name": video.category_id, "videos": []}
            )
            entry["videos"].append(_video_json(video, blobs))
        categories = list(grouped.values())
        await cache.set(cache_key, categories, CACHE_SETTINGS["videos_ttl"])

    phone = request.query.get("phone")
    if phone:
        categories = _with_viewer(categories, normalize_phone(phone))
    return web.json_response(categories)


async def stream_video(request):
    file_id = request.match_info["file_id"]
    blobs = request.app[BLOBS]
    ref = blobs.get(VIDEOS, file_id)

    video = request.app[DB].get_video_by_file(file_id)
    if video is not None and video.is_paid:
        phone = request.query.get("phone")
        user = request.app[DB].get_user_by_phone(normalize_phone(phone)) if phone else None
        if not can_view(video, user):
            return web.json_response({"message": "Accès VIP requis pour cette vidéo"}, status=403)

    # FileResponse answers Range requests with 206 partial content
    return web.FileResponse(
        blobs.path(VIDEOS, file_id),
        headers={"Content-Type": ref.content_type, "Cache-Control": "public, max-age=3600"}
    )


async def get_image(request):
    file_id = request.match_info["file_id"]
    blobs = request.app[BLOBS]
    ref = blobs.get(IMAGES, file_id)

    etag = f'"{ref.id}"'
    if request.headers.get("If-None-Match") == etag:
        return web.Response(status=304, headers={"ETag": etag})

    return web.FileResponse(
        blobs.path(IMAGES, file_id),
        headers={
            "Content-Type": ref.content_type,
            "Cache-Control": "public, max-age=86400",
            "ETag": etag,
        }
    )


async def update_video(request):
    video_id = request.match_info["video_id"]
    db = request.app[DB]
    blobs = request.app[BLOBS]
    video = db.get_video(video_id)
    form = await request.post()

    category_id = form.get("categoryId") or video.category_id
    if "part" in form:
        # An empty part opens the video to the whole domain
        part = form["part"] or None
    elif video.part and EntitlementKey(category_id, video.part) in ENTITLEMENT_FIELDS:
        part = video.part
    else:
        part = None
    _video_category(category_id, part)

    fields = {"category_id": category_id, "part": part}
    if form.get("title"):
        fields["title"] = form["title"]
    if "description" in form:
        fields["description"] = form["description"]
    if "isPaid" in form:
        fields["is_paid"] = form["isPaid"] == "true"
    replaced = []
    video_field = form.get("videoFile")
    if isinstance(video_field, web.FileField):
        fields["video_file_id"] = (await _store_upload(blobs, VIDEOS, video_field)).id
        replaced.append((VIDEOS, video.video_file_id))
    image_field = form.get("imageFile")
    if isinstance(image_field, web.FileField):
        fields["image_file_id"] = (await _store_upload(blobs, IMAGES, image_field)).id
        replaced.append((IMAGES, video.image_file_id))

    video = db.update_video(video_id, **fields)
    for folder, blob_id in replaced:
        blobs.delete(folder, blob_id)
    await request.app[CACHE].delete_prefix("videos_")
    logger.info(f"Video updated: {video_id}")

    return web.json_response({"message": "Vidéo mise à jour avec succès.", "video": _video_json(video, blobs)})


async def delete_video(request):
    video_id = request.match_info["video_id"]
    blobs = request.app[BLOBS]
    video = request.app[DB].delete_video(video_id)
    blobs.delete(VIDEOS, video.video_file_id)
    blobs.delete(IMAGES, video.image_file_id)
    await request.app[CACHE].delete_prefix("videos_")
    logger.info(f"Video deleted: {video_id}")
    return web.json_response({"message": "Vidéo supprimée avec succès.", "id": video_id})


# Monitoring

async def health(request):
    try:
        request.app[DB].count_users()
        database = "Connected"
    except StoreError:
        database = "Disconnected"
    return web.json_response({
        "status": "OK",
        "timestamp": _timestamp(),
        "uptime": round(time.monotonic() - request.app[STARTED_AT], 1),
        "memory": system_info()["process"],
        "database": database,
        "whatsapp": request.app[WHATSAPP].state,
        "cache": request.app[CACHE].stats(),
    })


async def metrics(request):
    db = request.app[DB]
    return web.json_response({
        "videos": {"total": db.count_videos()},
        "users": {"total": db.count_users()},
        "entitlements": [key.label for key in ALL_KEYS],
        "cache": request.app[CACHE].stats(),
        "system": system_info(),
    })


def create_app(db, admin_bot, whatsapp, cache, blobs, security=None) -> web.Application:
    app = web.Application(
        middlewares=[error_middleware],
        client_max_size=UPLOAD_SETTINGS["max_size"]
    )
    app[DB] = db
    app[ADMIN_BOT] = admin_bot
    app[WHATSAPP] = whatsapp
    app[CACHE] = cache
    app[BLOBS] = blobs
    app[SECURITY] = security or SecurityManager()
    app[STARTED_AT] = time.monotonic()

    app.router.add_post("/register", register)
    app.router.add_post("/api/login", login)
    app.router.add_post("/api/paiement", paiement)
    app.router.add_get("/api/vip-status", get_vip_status)
    app.router.add_post("/api/forgot-password", forgot_password)
    app.router.add_post("/api/verify-otp", verify_otp)
    app.router.add_post("/api/reset-password", reset_password)
    app.router.add_get("/api/users", list_users)
    app.router.add_get("/api/screen-capture", get_screen_capture)
    app.router.add_post("/api/screen-capture", set_screen_capture)
    app.router.add_post("/api/add-video", add_video)
    app.router.add_get("/api/videos", list_videos)
    app.router.add_get("/api/video/{file_id}", stream_video)
    app.router.add_get("/api/image/{file_id}", get_image)
    app.router.add_put("/api/update-video/{video_id}", update_video)
    app.router.add_delete("/api/delete-video/{video_id}", delete_video)
    app.router.add_get("/api/health", health)
    app.router.add_get("/api/metrics", metrics)
    return app
