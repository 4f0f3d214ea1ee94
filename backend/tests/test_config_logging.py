"""
Unit Tests for configuration, logging and error tracking helpers

Run with: pytest tests/test_config_logging.py -v
"""

import json
import logging
import pytest

from config import Settings
from logging_config import JSONFormatter, RequestContextFilter
from sentry_integration import filter_sensitive_data
from reconciliation.errors import (
    ReconciliationError,
    ValidationFailed,
    NotFound,
    Conflict,
    StoreUnavailable,
    error_from_status,
)


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


class TestSettings:
    """Test Settings defaults and validation."""

    def test_reconciliation_defaults(self):
        settings = make_settings()

        assert settings.PARENT_CLIENT_ID == "4e5a1e9e-35a3-41ab-bbb0-22cc0ac99fe4"
        assert settings.MISFITS_DEFAULT_LIMIT == 50
        assert settings.MISFITS_MERGE_LIMIT == 500
        assert settings.TICKET_POOL_LIMIT == 200
        assert settings.BULK_MAX_CONCURRENCY == 10

    def test_development_enables_debug_and_local_origins(self):
        settings = make_settings(ENVIRONMENT="development", CORS_ORIGINS="https://ops.example.com")

        assert settings.debug_enabled is True
        assert "http://localhost:3000" in settings.cors_origins_list
        assert "https://ops.example.com" in settings.cors_origins_list

    def test_production_validation(self):
        settings = make_settings(ENVIRONMENT="production", CORS_ORIGINS="*", DEBUG=True)

        errors = settings.validate_production_config()

        assert "DATABASE_URL is required" in errors
        assert "CORS_ORIGINS cannot be '*' in production" in errors
        assert "DEBUG should be False in production" in errors

    def test_valid_production_config(self):
        settings = make_settings(
            ENVIRONMENT="production",
            DATABASE_URL="postgresql+asyncpg://app@db.internal/billing",
            CORS_ORIGINS="https://ops.example.com",
        )

        assert settings.validate_production_config() == []
        assert settings.cors_origins_list == ["https://ops.example.com"]

    def test_missing_database_url_fails_loudly(self):
        with pytest.raises(ValueError):
            make_settings().get_database_url()


class TestLogging:
    """Test structured log output."""

    def _record(self, **extra):
        record = logging.LogRecord(
            name="reconciliation.services",
            level=logging.INFO,
            pathname=__file__,
            lineno=10,
            msg="Reconciliation event: %s",
            args=("reconciliation.disputed",),
            exc_info=None,
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_includes_extra(self):
        formatter = JSONFormatter(service_name="misfits-reconciliation")
        record = self._record(event="reconciliation.disputed", transaction_id="TX-1")

        data = json.loads(formatter.format(record))

        assert data["message"] == "Reconciliation event: reconciliation.disputed"
        assert data["service"] == "misfits-reconciliation"
        assert data["extra"]["transaction_id"] == "TX-1"

    def test_request_context_filter(self):
        context = RequestContextFilter()
        context.set_request_context(request_id="req-1", actor="ops@example.com")
        record = self._record()

        context.filter(record)

        assert record.request_id == "req-1"
        assert record.actor == "ops@example.com"

        context.clear_request_context()
        cleared = self._record()
        context.filter(cleared)
        assert cleared.request_id is None


class TestSentryFilter:

    def test_sensitive_headers_redacted(self):
        event = {"request": {"headers": {"Authorization": "Bearer abc", "X-User-Id": "ops"}}}

        filtered = filter_sensitive_data(event, {})

        assert filtered["request"]["headers"]["Authorization"] == "[REDACTED]"
        assert filtered["request"]["headers"]["X-User-Id"] == "ops"


class TestErrors:
    """Test the error taxonomy."""

    @pytest.mark.parametrize("error_cls,status_code", [
        (ValidationFailed, 400),
        (NotFound, 404),
        (Conflict, 409),
        (StoreUnavailable, 503),
    ])
    def test_status_codes(self, error_cls, status_code):
        error = error_cls("message")

        assert error.status_code == status_code
        assert error.to_dict() == {"error": "message"}
        assert isinstance(error, ReconciliationError)

    def test_error_from_status(self):
        assert isinstance(error_from_status(409, "claimed"), Conflict)

        unknown = error_from_status(418, "teapot")
        assert type(unknown) is ReconciliationError
        assert unknown.status_code == 418
