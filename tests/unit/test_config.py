"""Unit tests for PipelineSettings defaults, validation and derived values."""

from __future__ import annotations

import pytest
from pydantic import ValidationError as PydanticValidationError

from outbox_pipeline.config import PipelineSettings


class TestBackoff:
    def test_backoff_doubles_from_base(self) -> None:
        settings = PipelineSettings(BACKOFF_BASE_SECONDS=1.0, BACKOFF_CAP_SECONDS=60.0)

        assert [settings.backoff_seconds(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_backoff_is_capped(self) -> None:
        settings = PipelineSettings(BACKOFF_BASE_SECONDS=1.0, BACKOFF_CAP_SECONDS=10.0)

        assert settings.backoff_seconds(5) == 10.0
        assert settings.backoff_seconds(50) == 10.0

    def test_no_delay_before_first_failure(self) -> None:
        assert PipelineSettings().backoff_seconds(0) == 0.0


class TestValidation:
    def test_cap_below_base_is_rejected(self) -> None:
        with pytest.raises(PydanticValidationError, match="BACKOFF_CAP_SECONDS"):
            PipelineSettings(BACKOFF_BASE_SECONDS=10.0, BACKOFF_CAP_SECONDS=1.0)

    def test_claim_ttl_longer_than_dedup_ttl_is_rejected(self) -> None:
        with pytest.raises(PydanticValidationError, match="CLAIM_TTL_SECONDS"):
            PipelineSettings(DEDUP_TTL_SECONDS=60, CLAIM_TTL_SECONDS=120)

    def test_lease_must_outlive_publish_timeout(self) -> None:
        with pytest.raises(PydanticValidationError, match="LEASE_DURATION_SECONDS"):
            PipelineSettings(LEASE_DURATION_SECONDS=5.0, PUBLISH_TIMEOUT_SECONDS=10.0)

    def test_lease_must_cover_publish_and_store_update(self) -> None:
        with pytest.raises(PydanticValidationError, match="LEASE_DURATION_SECONDS"):
            PipelineSettings(
                LEASE_DURATION_SECONDS=12.0,
                PUBLISH_TIMEOUT_SECONDS=10.0,
                STORE_TIMEOUT_SECONDS=5.0,
            )

    def test_claim_ttl_must_outlive_all_handler_attempts(self) -> None:
        # 5 attempts x 30s plus 1 + 2 + 4 + 8s of backoff = 165s
        with pytest.raises(PydanticValidationError, match="CLAIM_TTL_SECONDS"):
            PipelineSettings(CLAIM_TTL_SECONDS=160)

        assert PipelineSettings(CLAIM_TTL_SECONDS=166).max_handling_seconds == 165.0

    @pytest.mark.parametrize(
        "field", ["PARTITION_COUNT", "MAX_ATTEMPT_COUNT", "OUTBOX_BATCH_SIZE", "RELAY_CONCURRENCY"]
    )
    def test_counts_must_be_positive(self, field: str) -> None:
        with pytest.raises(PydanticValidationError):
            PipelineSettings(**{field: 0})


class TestEnvironment:
    def test_reads_prefixed_environment_variables(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OUTBOX_PIPELINE_PARTITION_COUNT", "24")
        monkeypatch.setenv("OUTBOX_PIPELINE_CONSUMER_GROUP", "shipping")

        settings = PipelineSettings()

        assert settings.PARTITION_COUNT == 24
        assert settings.CONSUMER_GROUP == "shipping"

    def test_derived_identifiers(self) -> None:
        settings = PipelineSettings(SERVICE_NAME="orders-service", SERVICE_VERSION="2.1.0")

        assert settings.producer_id == "orders-service:2.1.0"
        assert settings.wake_key == "outbox:wake:orders-service"
