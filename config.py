import os
import pytz

# Bot Configuration
BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
ADMIN_CHAT_ID = int(os.getenv("CHAT_ID", "0"))

# WhatsApp gateway (HTTP bridge holding the WhatsApp Web session)
WHATSAPP_CONFIG = {
    "url": os.getenv("WHATSAPP_GATEWAY_URL", "http://localhost:3000"),
    "session": os.getenv("WHATSAPP_SESSION", "cursus-session"),
    "api_key": os.getenv("WHATSAPP_API_KEY"),
}

# Database Configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///kaboretech.db")

# HTTP server
HTTP_HOST = os.getenv("HOST", "0.0.0.0")
HTTP_PORT = int(os.getenv("PORT", "8000"))
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "")

# Training catalog: domain -> price and parts sold separately
FORMATIONS = {
    "Informatique": {"price": "30 000 FCFA", "parts": ("Hardware", "Software")},
    "Bureautique": {"price": "10 000 FCFA", "parts": ("Hardware", "Software")},
    "Marketing": {"price": "10 000 FCFA", "parts": ("Social", "Content")},
    "GSM": {"price": "30 000 FCFA", "parts": ("Hardware", "Software")},
}

PAYMENT_MODES = ("presentiel", "ligne")

# OTP Settings
OTP_LENGTH = 6
OTP_TTL_MINUTES = 5

PAYMENT_INSTRUCTIONS = os.getenv(
    "PAYMENT_INSTRUCTIONS",
    "👉 Orange Money, Moov Money, Wave, UBA, Western Union\n"
    "Contactez l'équipe pour obtenir les coordonnées de paiement.",
)

# Messages
MESSAGES = {
    "registration_request": (
        "👤 <b>Nouvel utilisateur inscrit</b> :\n"
        "📛 <b>Nom</b> : {name}\n"
        "📞 <b>Téléphone</b> : {phone}\n\n"
        "Chaque formation peut être payée par partie. "
        "Veuillez valider ou annuler les formations demandées par cet utilisateur :\n"
        "{formations}"
    ),
    "payment_review": (
        "📩 <b>Nouveau Paiement Reçu</b> :\n\n"
        "📝 <b>Numéro de Dépôt</b> : {reference}\n"
        "📞 <b>Utilisateur</b> : {phone}\n"
        "💼 <b>Domaine</b> : {domain} - {part}\n"
        "🌐 <b>Mode</b> : {mode}\n"
        "💰 <b>Prix</b> : {price} FCFA\n\n"
        "⏰ <b>Date</b> : {date}"
    ),
    "console_state": (
        "🗂 <b>Accès VIP</b>\n\n"
        "👤 <b>Utilisateur</b> : {name}\n"
        "📱 <b>Téléphone</b> : {phone}\n"
        "⏰ <b>Mis à jour le</b> : {date}\n\n"
        "{statuses}"
    ),
    "approved": "✅ Section validée avec succès !",
    "cancelled": "🗑️ Section désactivée",
    "already_approved": "ℹ️ Section déjà activée : {label}",
    "already_cancelled": "ℹ️ Section déjà désactivée : {label}",
    "invalid_request": "❌ Requête invalide",
    "user_not_found": "❌ Utilisateur introuvable",
    "console_error": "❌ Erreur lors de la mise à jour du statut VIP",
    "access_denied": "⛔️ Accès refusé.",
    "welcome_admin": (
        "⚙️ Console d'administration Kaboretech\n\n"
        "/user &lt;téléphone&gt; : afficher les accès VIP d'un utilisateur\n"
        "/users : derniers inscrits"
    ),
    "whatsapp_qr": "🔐 Nouveau QR code WhatsApp : scannez-le pour relier la session.",
    "vip_granted": (
        "🎉 *Félicitations {name} !*\n\n"
        "✅ Votre accès *{domain} {part}* est maintenant *ACTIF*.\n\n"
        "📱 Connectez-vous à votre compte pour accéder aux vidéos de formation.\n\n"
        "💼 *L'équipe Kabore Tech*"
    ),
    "vip_revoked": (
        "Bonjour {name},\n\n"
        "Votre accès *{domain} {part}* a été désactivé. "
        "Contactez-nous si vous pensez qu'il s'agit d'une erreur.\n\n"
        "💼 *L'équipe Kabore Tech*"
    ),
    "welcome_user": (
        "🎉 *Bonjour {name}* 👋\n\n"
        "*Bienvenue chez Kaboretech* 🇧🇫\n\n"
        "Voici les formations disponibles, chaque formation peut être payée par partie :\n\n"
        "{formations}\n"
        "{payment_instructions}\n\n"
        "Après paiement, veuillez nous le signaler avec une capture d'écran.\n\n"
        "Cordialement,\n*L'équipe Kabore Tech* 💼🚀"
    ),
    "otp": (
        "🔐 Votre code de réinitialisation Kaboretech : *{otp}*\n\n"
        "⏰ Valide pendant {minutes} minutes.\n\n"
        "_Merci de ne pas partager ce code._"
    ),
    "password_reset": (
        "✅ *Mot de passe réinitialisé*\n\n"
        "Votre mot de passe Kaboretech a été modifié avec succès."
    ),
}

# Timezone
TIMEZONE = pytz.timezone('Africa/Ouagadougou')
