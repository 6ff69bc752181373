# marketplace/infrastructure/services/message_catalog.py

from jinja2 import Environment, StrictUndefined, Template
from jinja2.exceptions import UndefinedError

from marketplace.domain.constants import DEFAULT_LANGUAGE
from marketplace.domain.exceptions import ValidationError


MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "mtables.pending": "Booking {{ reference }} is pending confirmation.",
        "mtables.confirmed": "Booking {{ reference }} is confirmed.",
        "mtables.checked_in": "You are checked in for booking {{ reference }}. Enjoy your meal!",
        "mtables.completed": "Thanks for dining with us. Booking {{ reference }} is complete.",
        "mtables.cancelled": "Booking {{ reference }} has been cancelled.",
        "mtables.no_show": "Booking {{ reference }} was marked as a no-show.",
        "payout.received": "You received a payout of {{ amount }} {{ currency }}.",
        "tip.received": "You received a tip of {{ amount }} {{ currency }}{% if reference %} for booking {{ reference }}{% endif %}.",
        "wallet.topped_up": "Your wallet was credited with {{ amount }} {{ currency }}.",
    },
    "fr": {
        "mtables.pending": "La réservation {{ reference }} est en attente de confirmation.",
        "mtables.confirmed": "La réservation {{ reference }} est confirmée.",
        "mtables.checked_in": "Votre arrivée pour la réservation {{ reference }} est enregistrée. Bon appétit !",
        "mtables.cancelled": "La réservation {{ reference }} a été annulée.",
        "payout.received": "Vous avez reçu un versement de {{ amount }} {{ currency }}.",
        "tip.received": "Vous avez reçu un pourboire de {{ amount }} {{ currency }}.",
        "wallet.topped_up": "Votre portefeuille a été crédité de {{ amount }} {{ currency }}.",
    },
}


class MessageCatalog:
    """
    Renders localized notification text from message keys.

    Unknown languages and keys missing from a language fall back to the
    default language. Missing template parameters are an error.
    """

    def __init__(
        self,
        messages: dict[str, dict[str, str]] | None = None,
        default_language: str = DEFAULT_LANGUAGE,
    ):
        self._messages = messages if messages is not None else MESSAGES
        self._default_language = default_language
        self._env = Environment(autoescape=False, undefined=StrictUndefined)
        self._compiled: dict[tuple[str, str], Template] = {}

    def resolve_language(self, message_key: str, language_code: str | None) -> str:
        if language_code and message_key in self._messages.get(language_code, {}):
            return language_code
        return self._default_language

    def render(
        self,
        message_key: str,
        params: dict | None = None,
        language_code: str | None = None,
    ) -> str:
        language = self.resolve_language(message_key, language_code)
        source = self._messages.get(language, {}).get(message_key)
        if source is None:
            raise ValidationError(
                f"Unknown message key {message_key}",
                details={"message_key": message_key},
            )

        template = self._compiled.get((language, message_key))
        if template is None:
            template = self._env.from_string(source)
            self._compiled[(language, message_key)] = template

        try:
            return template.render(**(params or {}))
        except UndefinedError as exc:
            raise ValidationError(
                f"Missing parameter for message {message_key}: {exc.message}",
                details={"message_key": message_key},
            ) from exc


message_catalog = MessageCatalog()
