import os

import pytest
from pydantic import ValidationError

from ucp_core.config import Settings, load_settings
from ucp_core.constants import DEFAULT_WEBHOOK_TOPICS


def test_defaults():
    settings = Settings()
    assert settings.price_lock_seconds == 600
    assert settings.webhook_max_attempts == 5
    assert settings.webhook_topics == DEFAULT_WEBHOOK_TOPICS
    assert settings.store_url == "memory://"


def test_from_env_reads_prefixed_variables():
    settings = Settings.from_env({
        "UCP_MERCHANT_ID": "merchant_env",
        "UCP_PRICE_LOCK_SECONDS": "120",
        "UCP_WEBHOOK_TOPICS": "order.created, order.shipped",
        "UNRELATED": "x",
    })

    assert settings.merchant_id == "merchant_env"
    assert settings.price_lock_seconds == 120
    assert settings.webhook_topics == ["order.created", "order.shipped"]


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        Settings.from_env({"UCP_PRICE_LOCK_SECONDS": "0"})
    with pytest.raises(ValidationError):
        Settings(webhook_jitter=2)


def test_reservations_must_outlive_the_price_lock():
    with pytest.raises(ValidationError):
        Settings(price_lock_seconds=600, reservation_ttl_seconds=60)
    assert Settings(price_lock_seconds=600, reservation_ttl_seconds=600).reservation_ttl_seconds == 600


def test_load_settings_reads_dotenv_file(tmp_path, mocker):
    mocker.patch.dict(os.environ)
    os.environ.pop("UCP_MERCHANT_ID", None)
    os.environ["UCP_PSP_ID"] = "psp_from_environment"
    env_file = tmp_path / ".env"
    env_file.write_text("UCP_MERCHANT_ID=merchant_dotenv\nUCP_PSP_ID=psp_from_file\n")

    settings = load_settings(str(env_file))

    assert settings.merchant_id == "merchant_dotenv"
    assert settings.psp_id == "psp_from_environment"


def test_load_settings_without_dotenv_file(tmp_path, mocker):
    mocker.patch.dict(os.environ, {"UCP_MERCHANT_ID": "merchant_env"})

    assert load_settings(str(tmp_path / "missing.env")).merchant_id == "merchant_env"
