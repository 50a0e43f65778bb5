from typing import Any, Dict, Optional
from engagement.settings import settings
from engagement.observability.logging import log

GOODBYE_KEY = "engagement.goodbye_self_select"
WEEKLY_REVIEW_KEY = "engagement.weekly_review"
HELP_RESTART_KEY = "engagement.help_restart"
WELCOME_BACK_KEY = "engagement.welcome_back"
REPLY_CONFUSED_KEY = "engagement.goodbye_response.confused"
REPLY_BUSY_KEY = "engagement.goodbye_response.busy"
REPLY_ALL_GOOD_KEY = "engagement.goodbye_response.all_good"

CATALOG: Dict[str, Dict[str, str]] = {
    "en": {
        GOODBYE_KEY: (
            "Hey! I noticed it's been a while since you dropped by 🤔\n\n"
            "Everything okay? Let me know:\n"
            "1️⃣ Confused about the app\n"
            "2️⃣ Just busy right now\n"
            "3️⃣ All good, just don't need it anymore\n\n"
            "Just reply with the number that fits!"
        ),
        WEEKLY_REVIEW_KEY: (
            "Nice week! 🎉 You kept your finances up to date these last 7 days. Keep it going!"
        ),
        HELP_RESTART_KEY: (
            "Let's start from the beginning. Try logging an expense like "
            "'spent 50 on lunch' and I'll take care of the rest."
        ),
        WELCOME_BACK_KEY: "Hey! Great to see you back. Pick up where you left off!",
        REPLY_CONFUSED_KEY: (
            "No problem! Let me help you get started again. I'll send you some tips "
            "over the next few days."
        ),
        REPLY_BUSY_KEY: "Got it! See you in {remindDays} days. I'll be here if you need anything in the meantime.",
        REPLY_ALL_GOOD_KEY: "All good! The door is always open. Just send a message whenever you want to come back.",
    },
    "pt-BR": {
        GOODBYE_KEY: (
            "Oi! Percebi que faz um tempinho que você não aparece 🤔\n\n"
            "Está tudo bem? Me conta:\n"
            "1️⃣ Confuso com o app\n"
            "2️⃣ Só ocupado agora\n"
            "3️⃣ Tudo certo, não preciso mais\n\n"
            "É só responder com o número!"
        ),
        WEEKLY_REVIEW_KEY: (
            "Que semana! 🎉 Você manteve suas finanças em dia nos últimos 7 dias. Continue assim!"
        ),
        HELP_RESTART_KEY: (
            "Vamos começar do início. Tente registrar uma despesa como "
            "'gastei 50 no almoço' que eu cuido do resto."
        ),
        WELCOME_BACK_KEY: "Oi! Que bom te ver de volta. Continue de onde parou!",
        REPLY_CONFUSED_KEY: (
            "Sem problemas! Vou te ajudar a começar de novo. Vou te mandar algumas "
            "dicas nos próximos dias."
        ),
        REPLY_BUSY_KEY: "Entendido! Te vejo daqui a {remindDays} dias. Enquanto isso, fico aqui se precisar de algo.",
        REPLY_ALL_GOOD_KEY: "Tudo certo! A porta está sempre aberta. É só mandar uma mensagem quando quiser voltar.",
    },
}


def _catalog_for(locale: Optional[str]) -> Dict[str, str]:
    loc = (locale or settings.DEFAULT_LOCALE or "pt-BR").strip()
    if loc in CATALOG:
        return CATALOG[loc]
    # pt-br / pt_BR / en-US style variants
    lowered = loc.replace("_", "-").lower()
    if lowered.startswith("pt"):
        return CATALOG["pt-BR"]
    if lowered.startswith("en"):
        return CATALOG["en"]
    return CATALOG.get(settings.DEFAULT_LOCALE, CATALOG["pt-BR"])


def render(message_key: str, params: Optional[Dict[str, Any]] = None, locale: Optional[str] = None) -> str:
    template = _catalog_for(locale).get(message_key)
    if template is None:
        log(event="template_missing", level="warning", messageKey=message_key, locale=locale)
        return f"[Missing translation: {message_key}]"
    try:
        return template.format(**(params or {}))
    except (KeyError, IndexError, ValueError) as e:
        log(event="template_render_failed", level="error", messageKey=message_key, error=str(e))
        return f"[Translation error: {message_key}]"
