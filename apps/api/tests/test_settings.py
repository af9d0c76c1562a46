"""Tests for settings validation."""

import pytest

from market_api.settings import Settings


def production(**overrides) -> Settings:
    values = {
        "environment": "production",
        "platform_secret": "sEdProductionSecret",
        "jwt_secret_key": "a-real-jwt-secret",
        "admin_api_token": "a-real-admin-token",
    }
    values.update(overrides)
    return Settings(**values)


def test_development_skips_production_checks():
    Settings(environment="development", platform_secret=None).validate_production_settings()


def test_valid_production_settings():
    production().validate_production_settings()


@pytest.mark.parametrize(
    "overrides,message",
    [
        ({"platform_secret": None}, "PLATFORM_SECRET"),
        ({"jwt_secret_key": "dev-jwt-secret-change-in-production"}, "JWT_SECRET_KEY"),
        ({"admin_api_token": "dev-admin-token-change-in-production"}, "ADMIN_API_TOKEN"),
    ],
)
def test_production_rejects_development_values(overrides, message):
    with pytest.raises(ValueError, match=message):
        production(**overrides).validate_production_settings()


def test_database_url_from_parts():
    settings = Settings(database_url=None, postgres_user="u", postgres_password="p", postgres_db="d", postgres_port=5433)
    assert settings.database_url_computed == "postgresql://u:p@localhost:5433/d"


def test_explicit_database_url_wins():
    assert Settings(database_url="sqlite://").database_url_computed == "sqlite://"
