"""Tests for AI settings storage and option resolution."""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from app.core.errors import PersistenceError, ValidationError
from app.core.tiers import RATE_LIMITS, TierLimits, UserTier
from app.schemas.ai import AIOptions, AISettingsUpdate
from app.services.ai_settings import (
    DEFAULT_LANGUAGE,
    DEFAULT_LENGTH,
    DEFAULT_STYLE,
    ai_settings_service,
)
from tests.factories import add_user

FREE = RATE_LIMITS[UserTier.FREE]


# ─── Storage ─────────────────────────────────────────────────────────────────

class TestGetOrCreate:
    @pytest.mark.asyncio
    async def test_first_access_creates_defaults(self, db):
        await add_user(db, 1)
        row = await ai_settings_service.get_or_create(db, 1)

        assert row.user_id == 1
        assert row.default_length == DEFAULT_LENGTH
        assert row.default_style == DEFAULT_STYLE
        assert row.default_language == DEFAULT_LANGUAGE
        assert row.stream_enabled is True

    @pytest.mark.asyncio
    async def test_second_access_returns_same_row(self, db):
        await add_user(db, 2)
        first = await ai_settings_service.get_or_create(db, 2)
        second = await ai_settings_service.get_or_create(db, 2)
        assert first.id == second.id


class TestUpdate:
    @pytest.mark.asyncio
    async def test_invalid_length_rejected_and_nothing_written(self, db):
        await add_user(db, 3)
        await ai_settings_service.get_or_create(db, 3)

        with pytest.raises(ValidationError, match="Invalid length setting"):
            await ai_settings_service.update(
                db, 3, AISettingsUpdate(default_length="xlarge")
            )

        row = await ai_settings_service.get_or_create(db, 3)
        assert row.default_length == DEFAULT_LENGTH

    @pytest.mark.asyncio
    async def test_one_bad_field_blocks_the_whole_update(self, db):
        await add_user(db, 4)
        with pytest.raises(ValidationError):
            await ai_settings_service.update(
                db, 4, AISettingsUpdate(default_style="casual", default_language="fr")
            )

        row = await ai_settings_service.get_or_create(db, 4)
        assert row.default_style == DEFAULT_STYLE

    @pytest.mark.asyncio
    async def test_partial_update_keeps_absent_fields(self, db):
        await add_user(db, 5)
        await ai_settings_service.update(db, 5, AISettingsUpdate(default_style="casual"))
        row = await ai_settings_service.update(
            db, 5, AISettingsUpdate(default_length="long")
        )

        assert row.default_style == "casual"
        assert row.default_length == "long"
        assert row.default_language == DEFAULT_LANGUAGE

    @pytest.mark.asyncio
    async def test_explicit_false_is_written(self, db):
        await add_user(db, 6)
        row = await ai_settings_service.update(
            db, 6, AISettingsUpdate(stream_enabled=False)
        )
        assert row.stream_enabled is False

    @pytest.mark.asyncio
    async def test_empty_update_is_a_noop(self, db):
        await add_user(db, 7)
        row = await ai_settings_service.update(db, 7, AISettingsUpdate())
        assert row.default_length == DEFAULT_LENGTH

    @pytest.mark.asyncio
    async def test_store_failure_raises_persistence_error(self):
        db = AsyncMock()
        db.execute.side_effect = OperationalError("SELECT ai_settings", {}, Exception("down"))

        with pytest.raises(PersistenceError):
            await ai_settings_service.update(db, 8, AISettingsUpdate(default_style="casual"))
        db.rollback.assert_awaited_once()


class TestValidateUpdate:
    def test_returns_only_present_fields(self):
        values = ai_settings_service.validate_update(
            AISettingsUpdate(default_language="en")
        )
        assert values == {"default_language": "en"}

    def test_explicit_null_rejected(self):
        with pytest.raises(ValidationError, match="Invalid style setting"):
            ai_settings_service.validate_update(AISettingsUpdate(default_style=None))

    def test_null_stream_rejected(self):
        with pytest.raises(ValidationError, match="Invalid stream setting"):
            ai_settings_service.validate_update(AISettingsUpdate(stream_enabled=None))


# ─── Option resolution ───────────────────────────────────────────────────────

class TestResolveOptions:
    def _stored(self, **overrides):
        row = ai_settings_service.default_settings(1)
        for key, value in overrides.items():
            setattr(row, key, value)
        return row

    def test_request_wins_over_stored(self):
        stored = self._stored(default_length="long", default_style="casual")
        options = ai_settings_service.resolve_options(
            AIOptions(length="short"), stored, FREE
        )
        assert options.length == "short"
        assert options.style == "casual"
        assert options.language == DEFAULT_LANGUAGE

    def test_explicit_false_stream_wins(self):
        stored = self._stored(stream_enabled=True)
        options = ai_settings_service.resolve_options(
            AIOptions(streamEnabled=False), stored, FREE
        )
        assert options.stream_enabled is False

    def test_stored_stream_used_when_request_silent(self):
        stored = self._stored(stream_enabled=False)
        options = ai_settings_service.resolve_options(AIOptions(), stored, FREE)
        assert options.stream_enabled is False

    def test_zero_temperature_wins(self):
        options = ai_settings_service.resolve_options(
            AIOptions(temperature=0), self._stored(), FREE
        )
        assert options.temperature == 0

    def test_max_tokens_capped_by_tier(self):
        options = ai_settings_service.resolve_options(
            AIOptions(maxTokens=50000), self._stored(), FREE
        )
        assert options.max_tokens == FREE.max_tokens

    def test_max_tokens_below_cap_kept(self):
        limits = TierLimits("test", 10, 50, max_tokens=1000)
        options = ai_settings_service.resolve_options(
            AIOptions(maxTokens=300), self._stored(), limits
        )
        assert options.max_tokens == 300

    def test_invalid_request_option_rejected(self):
        with pytest.raises(ValidationError, match="Invalid length option"):
            ai_settings_service.resolve_options(
                AIOptions(length="huge"), self._stored(), FREE
            )

    def test_validate_options_checks_only_given_values(self):
        ai_settings_service.validate_options(AIOptions(language="en"))
        ai_settings_service.validate_options(AIOptions())
        with pytest.raises(ValidationError, match="Invalid style option"):
            ai_settings_service.validate_options(AIOptions(style="sarcastic"))

    def test_history_snapshot_uses_camel_case(self):
        options = ai_settings_service.resolve_options(
            AIOptions(noteId=9), self._stored(), FREE
        )
        snapshot = options.to_history()
        assert options.note_id == 9
        assert set(snapshot) == {
            "language", "length", "style", "maxTokens", "temperature", "streamEnabled",
        }
