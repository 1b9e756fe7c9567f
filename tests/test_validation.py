from __future__ import annotations

from typing import Any

import allure
import pytest
from factories import SITE_ENDPOINT, build_payload

from nightscout_tuner.jobs.validation import normalize_endpoint, validate_submission

pytestmark = [
    allure.epic("Job Submission"),
    allure.feature("Payload Validation"),
]


def _paths(payload: Any) -> set[str]:
    return {issue.path for issue in validate_submission(payload).errors}


def test_valid_payload_builds_normalized_submission() -> None:
    report = validate_submission(build_payload())

    assert report.is_valid
    assert report.submission is not None
    assert report.submission.endpoint == SITE_ENDPOINT
    assert report.submission.access_token == "s3cret-api-key"
    assert report.submission.settings.autotune_days == 7
    assert report.submission.settings.time_zone == "Europe/Amsterdam"
    assert report.submission.settings.oaps_profile["dia"] == 5


def test_missing_access_token_is_allowed() -> None:
    report = validate_submission(build_payload(token=None))

    assert report.submission is not None
    assert report.submission.access_token is None


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://Sugar.Example.com", "https://sugar.example.com/"),
        ("HTTPS://sugar.example.com/ns", "https://sugar.example.com/ns/"),
        ("http://sugar.example.com:1337/ns/?token=abc#frag", "http://sugar.example.com:1337/ns/"),
    ],
)
def test_normalize_endpoint(url: str, expected: str) -> None:
    assert normalize_endpoint(url) == expected


@pytest.mark.parametrize(
    "url",
    [
        "ftp://sugar.example.com",
        "sugar.example.com",
        "https://",
        "https://user:pw@sugar.example.com",
    ],
)
def test_normalize_endpoint_rejects_non_http_urls(url: str) -> None:
    with pytest.raises(ValueError):
        normalize_endpoint(url)


def test_non_object_payload_is_rejected() -> None:
    assert _paths([1, 2, 3]) == {"$"}


@pytest.mark.parametrize(
    ("field", "value"),
    [
        ("autosens_min", 0),
        ("autosens_max", -1),
        ("min_5m_carbimpact", 0),
        ("min_5m_carbimpact", 2.5),
        ("uam_as_basal", "yes"),
        ("insulin_type", "slow"),
        ("autotune_days", 0),
        ("autotune_days", 31),
        ("autotune_days", True),
        ("pump_basal_increment", "0.05"),
        ("email_address", "not-an-email"),
    ],
)
def test_settings_constraints(field: str, value: Any) -> None:
    payload = build_payload()
    payload["settings"][field] = value

    report = validate_submission(payload)

    assert report.submission is None
    assert f"$.settings.{field}" in {issue.path for issue in report.errors}


def test_autotune_days_upper_bound_is_inclusive() -> None:
    payload = build_payload()
    payload["settings"]["autotune_days"] = 30

    assert validate_submission(payload).is_valid


def test_email_address_is_optional_but_checked() -> None:
    payload = build_payload()
    payload["settings"]["email_address"] = "someone@example.org"

    report = validate_submission(payload)

    assert report.submission is not None
    assert report.submission.settings.email_address == "someone@example.org"


@pytest.mark.parametrize(
    ("field", "value"),
    [
        ("dia", 0),
        ("curve", "fiasp"),
        ("out_units", "mmol/L"),
        ("timezone", "Mars/Olympus_Mons"),
        ("carb_ratio", None),
        ("basalprofile", {}),
    ],
)
def test_oaps_profile_constraints(field: str, value: Any) -> None:
    payload = build_payload()
    payload["settings"]["oaps_profile_data"][field] = value

    assert f"$.settings.oaps_profile_data.{field}" in _paths(payload)


def test_nested_schedule_errors_carry_their_path() -> None:
    payload = build_payload()
    payload["settings"]["oaps_profile_data"]["isfProfile"]["sensitivities"][0].pop("sensitivity")
    payload["settings"]["oaps_profile_data"]["basalprofile"][1]["rate"] = "fast"

    paths = _paths(payload)

    assert "$.settings.oaps_profile_data.isfProfile.sensitivities[0].sensitivity" in paths
    assert "$.settings.oaps_profile_data.basalprofile[1].rate" in paths


def test_all_problems_are_reported_together() -> None:
    payload = build_payload("ftp://sugar.example.com")
    payload["settings"]["autotune_days"] = 99
    payload["settings"]["insulin_type"] = "slow"

    assert {
        "$.nightscout_url",
        "$.settings.autotune_days",
        "$.settings.insulin_type",
    } <= _paths(payload)
