"""Per-user AI settings and effective option resolution."""

import logging
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.errors import PersistenceError, ValidationError
from app.core.tiers import TierLimits
from app.models.ai_settings import AILanguage, AILength, AISettings, AIStyle
from app.schemas.ai import AIOptions, AISettingsUpdate

logger = logging.getLogger(__name__)

DEFAULT_LENGTH = AILength.MEDIUM.value
DEFAULT_STYLE = AIStyle.PROFESSIONAL.value
DEFAULT_LANGUAGE = AILanguage.ZH.value
DEFAULT_STREAM_ENABLED = True

_LENGTHS = {item.value for item in AILength}
_STYLES = {item.value for item in AIStyle}
_LANGUAGES = {item.value for item in AILanguage}

# Updatable column -> (allowed values, error message). Column names come from
# this table only, never from the request body.
_UPDATABLE_CHOICES: dict[str, tuple[set[str], str]] = {
    "default_length": (_LENGTHS, "Invalid length setting"),
    "default_style": (_STYLES, "Invalid style setting"),
    "default_language": (_LANGUAGES, "Invalid language setting"),
}


@dataclass
class EffectiveOptions:
    """Options for one AI request after merging request, stored and default values."""

    language: str
    length: str
    style: str
    stream_enabled: bool
    max_tokens: int
    temperature: float
    provider: str
    model: str
    save_history: bool = True
    note_id: int | None = None

    def to_history(self) -> dict:
        """Snapshot stored alongside a history entry."""
        return {
            "language": self.language,
            "length": self.length,
            "style": self.style,
            "maxTokens": self.max_tokens,
            "temperature": self.temperature,
            "streamEnabled": self.stream_enabled,
        }


def _check_choice(value: str, allowed: set[str], message: str) -> str:
    if value not in allowed:
        raise ValidationError(message)
    return value


class AISettingsService:
    """Service for reading, updating and applying AI preferences."""

    def __init__(self) -> None:
        self.settings = get_settings()

    def default_settings(self, user_id: int) -> AISettings:
        """A transient row carrying the documented defaults."""
        return AISettings(
            user_id=user_id,
            provider=self.settings.llm_provider,
            model=self.settings.llm_model,
            default_length=DEFAULT_LENGTH,
            default_style=DEFAULT_STYLE,
            default_language=DEFAULT_LANGUAGE,
            stream_enabled=DEFAULT_STREAM_ENABLED,
        )

    async def _select(self, db: AsyncSession, user_id: int) -> AISettings | None:
        result = await db.execute(
            select(AISettings)
            .where(AISettings.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, db: AsyncSession, user_id: int) -> AISettings:
        """Return the user's settings, creating the default row on first access.

        Uses INSERT ... ON CONFLICT DO NOTHING so two first requests from the
        same user end up sharing one row.
        """
        row = await self._select(db, user_id)
        if row is not None:
            return row

        dialect = db.get_bind().dialect.name
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = (
            insert(AISettings)
            .values(
                user_id=user_id,
                provider=self.settings.llm_provider,
                model=self.settings.llm_model,
                default_length=DEFAULT_LENGTH,
                default_style=DEFAULT_STYLE,
                default_language=DEFAULT_LANGUAGE,
                stream_enabled=DEFAULT_STREAM_ENABLED,
            )
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        await db.execute(stmt)
        await db.commit()
        logger.info("Created default AI settings for user %s", user_id)

        # Either our insert or a concurrent one
        result = await db.execute(
            select(AISettings).where(AISettings.user_id == user_id)
        )
        return result.scalar_one()

    async def get_or_default(self, db: AsyncSession, user_id: int) -> AISettings:
        """Like ``get_or_create`` but falls back to defaults when the store is down."""
        try:
            return await self.get_or_create(db, user_id)
        except SQLAlchemyError as e:
            logger.error("Failed to load AI settings for user %s, using defaults: %s", user_id, e)
            await db.rollback()
            return self.default_settings(user_id)

    def validate_update(self, partial: AISettingsUpdate) -> dict:
        """Check every field present in ``partial`` and return the column values to write."""
        values: dict = {}
        for name in sorted(partial.model_fields_set):
            value = getattr(partial, name)
            if name == "stream_enabled":
                if value is None:
                    raise ValidationError("Invalid stream setting")
                values[name] = value
                continue

            choices = _UPDATABLE_CHOICES.get(name)
            if choices is None:
                continue
            allowed, message = choices
            if value is None:
                raise ValidationError(message)
            values[name] = _check_choice(value, allowed, message)
        return values

    async def update(
        self,
        db: AsyncSession,
        user_id: int,
        partial: AISettingsUpdate,
    ) -> AISettings:
        """Apply a validated partial update.

        Nothing is written when any present field is invalid. Fields absent
        from the request keep their stored value; explicit ``false`` is kept.
        """
        values = self.validate_update(partial)
        try:
            row = await self.get_or_create(db, user_id)
            if not values:
                return row

            await db.execute(
                update(AISettings)
                .where(AISettings.user_id == user_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to update AI settings for user %s: %s", user_id, e)
            await db.rollback()
            raise PersistenceError("Failed to update AI settings") from e

        logger.info("Updated AI settings for user %s: %s", user_id, sorted(values))
        return await self._select(db, user_id) or row

    def validate_options(self, options: AIOptions) -> None:
        """Reject per-request length/style/language values outside the allowed sets."""
        if options.language:
            _check_choice(options.language, _LANGUAGES, "Invalid language option")
        if options.length:
            _check_choice(options.length, _LENGTHS, "Invalid length option")
        if options.style:
            _check_choice(options.style, _STYLES, "Invalid style option")

    def resolve_options(
        self,
        options: AIOptions,
        stored: AISettings,
        limits: TierLimits,
    ) -> EffectiveOptions:
        """Merge per-request options over stored settings over system defaults.

        Values are merged key by key; an explicit ``0``/``False`` in the
        request wins over the stored value. ``max_tokens`` is capped by the
        tier ceiling.
        """
        language = options.language or stored.default_language or DEFAULT_LANGUAGE
        length = options.length or stored.default_length or DEFAULT_LENGTH
        style = options.style or stored.default_style or DEFAULT_STYLE

        _check_choice(language, _LANGUAGES, "Invalid language option")
        _check_choice(length, _LENGTHS, "Invalid length option")
        _check_choice(style, _STYLES, "Invalid style option")

        if options.stream_enabled is not None:
            stream_enabled = options.stream_enabled
        elif stored.stream_enabled is not None:
            stream_enabled = stored.stream_enabled
        else:
            stream_enabled = DEFAULT_STREAM_ENABLED

        max_tokens = options.max_tokens or self.settings.llm_default_max_tokens
        if limits.max_tokens > 0:
            max_tokens = min(max_tokens, limits.max_tokens)

        temperature = (
            options.temperature
            if options.temperature is not None
            else self.settings.llm_default_temperature
        )

        return EffectiveOptions(
            language=language,
            length=length,
            style=style,
            stream_enabled=stream_enabled,
            max_tokens=max_tokens,
            temperature=temperature,
            provider=stored.provider or self.settings.llm_provider,
            model=stored.model or self.settings.llm_model,
            save_history=options.save_history,
            note_id=options.note_id,
        )


# Singleton instance
ai_settings_service = AISettingsService()
