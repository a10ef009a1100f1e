import pytest

from pxlcensor.domain.error_taxonomy import (
    CANONICAL_ERROR_CODES,
    format_error_log,
    is_canonical_error_code,
    resolve_error_code,
)
from pxlcensor.domain.errors import CapabilityDeniedError, DomainDependencyError, MediaTransferError


@pytest.mark.unit
def test_canonical_error_codes_are_enforced() -> None:
    assert is_canonical_error_code("filter_failed") is True
    assert is_canonical_error_code("unknown_error") is False
    assert "internal_error" in CANONICAL_ERROR_CODES


@pytest.mark.unit
def test_unknown_codes_resolve_to_internal_error() -> None:
    assert resolve_error_code("media_upload_failed") == "media_upload_failed"
    assert resolve_error_code("schema_validation_failed") == "internal_error"
    assert resolve_error_code(None) == "internal_error"


@pytest.mark.unit
def test_error_log_is_prefixed_with_code() -> None:
    assert format_error_log(code="filter_failed", detail=" exit 1 \n") == "filter_failed: exit 1"
    assert format_error_log(code="bogus", detail="x") == "internal_error: x"
    assert format_error_log(code="image_missing", detail="") == "image_missing"


@pytest.mark.unit
def test_capability_denial_is_a_transfer_failure() -> None:
    error = CapabilityDeniedError("GET /originals/a.jpg denied: 403 invalid signature")

    assert isinstance(error, MediaTransferError)
    assert isinstance(error, DomainDependencyError)
    assert MediaTransferError("boom", status_code=502).status_code == 502
