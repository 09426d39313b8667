# Copyright 2026 UCP Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Checkout core configuration.

Settings have working defaults for local use and can be overridden with
``UCP_``-prefixed environment variables, e.g.::

    UCP_MERCHANT_ID=merchant_1
    UCP_STORE_URL=sqlite:///ledger.db
    UCP_PRICE_LOCK_SECONDS=600
    UCP_WEBHOOK_TOPICS=order.created,order.shipped

A ``.env`` file in the working directory is loaded first; variables already
set in the environment win.
"""

import os
from typing import Any, Dict, List, Mapping, Optional
from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from .constants import DEFAULT_WEBHOOK_TOPICS


ENV_PREFIX = "UCP_"


class Settings(BaseModel):
    """Runtime settings for the checkout core."""

    # Business identity
    merchant_id: str = "merchant_ucp_store"
    psp_id: str = "psp_mock"
    default_currency: str = Field("USD", pattern=r"^[A-Z]{3}$")
    signing_key_path: Optional[str] = Field(
        None,
        description="PEM EC P-256 private key used to sign webhooks; generated when missing"
    )
    signing_key_id: str = "business_key_1"

    # Checkout policy
    price_lock_seconds: int = Field(600, gt=0)
    reservation_ttl_seconds: int = Field(900, gt=0)
    session_ttl_seconds: int = Field(1800, gt=0, description="Inactivity window before a session is cancelled")
    tax_rate_bps: int = Field(0, ge=0, description="Tax rate in basis points")
    shipping_flat_minor: int = Field(0, ge=0)
    reconcile_grace_seconds: int = Field(60, ge=0)
    sweep_interval_seconds: float = Field(30.0, gt=0)
    catalog_cache_ttl_seconds: float = Field(300.0, ge=0)

    # Webhook delivery
    webhook_timeout_seconds: float = Field(10.0, gt=0)
    webhook_max_attempts: int = Field(5, ge=1)
    webhook_backoff_base_seconds: float = Field(1.0, ge=0)
    webhook_backoff_cap_seconds: float = Field(60.0, ge=0)
    webhook_jitter: float = Field(0.1, ge=0, le=1)
    webhook_topics: List[str] = Field(default_factory=lambda: list(DEFAULT_WEBHOOK_TOPICS))

    # Ledger store
    store_url: str = "memory://"
    store_retry_attempts: int = Field(3, ge=1)
    store_retry_base_delay_seconds: float = Field(0.05, ge=0)

    # Process
    log_level: str = "INFO"
    mcp_host: str = "localhost"
    mcp_port: int = 10999

    @model_validator(mode="after")
    def _holds_outlive_price_lock(self) -> "Settings":
        if self.reservation_ttl_seconds < self.price_lock_seconds:
            raise ValueError("reservation_ttl_seconds must not be shorter than price_lock_seconds")
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            Settings with every ``UCP_<FIELD>`` variable applied
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            if field.annotation == List[str]:
                values[name] = [part.strip() for part in raw.split(",") if part.strip()]
            else:
                values[name] = raw
        return cls.model_validate(values)


def load_settings(env_file: Optional[str] = ".env") -> Settings:
    """Settings for the current process, after loading ``env_file`` into the environment when it exists."""
    if env_file:
        load_dotenv(dotenv_path=env_file)
    return Settings.from_env()
