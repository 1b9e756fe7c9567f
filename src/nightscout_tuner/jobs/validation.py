"""Structural and range validation of tuning job submissions."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit, urlunsplit
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from nightscout_tuner.jobs.models import JobSettings, Submission, ValidationIssue

INSULIN_TYPES = ("rapid-acting", "ultra-rapid", "__default__")
GLUCOSE_UNITS = ("mmol", "mg/dL")
MAX_AUTOTUNE_DAYS = 30

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(slots=True)
class ValidationReport:
    """Validated submission, or the list of problems that prevented it."""

    submission: Submission | None
    errors: list[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.submission is not None and not self.errors


def normalize_endpoint(url: str) -> str:
    """Canonical form of a Nightscout URL, used as the exclusivity key."""

    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    if scheme not in {"http", "https"} or not parts.hostname:
        raise ValueError(f"Expected an absolute http(s) URL, got {url!r}")
    netloc = parts.hostname.lower()
    if parts.port is not None:
        netloc = f"{netloc}:{parts.port}"
    if parts.username:
        raise ValueError("Credentials must not be embedded in the Nightscout URL")
    path = parts.path or "/"
    if not path.endswith("/"):
        path = f"{path}/"
    return urlunsplit((scheme, netloc, path, "", ""))


class _Checker:
    def __init__(self) -> None:
        self.errors: list[ValidationIssue] = []

    def fail(self, path: str, message: str) -> None:
        self.errors.append(ValidationIssue(path=path, message=message))

    def obj(self, payload: Any, path: str) -> dict[str, Any] | None:
        if not isinstance(payload, dict):
            self.fail(path, "must be an object")
            return None
        return payload

    def string(
        self,
        payload: dict[str, Any],
        key: str,
        path: str,
        *,
        optional: bool = False,
    ) -> None:
        if key not in payload:
            if not optional:
                self.fail(f"{path}.{key}", "is required")
            return
        if not isinstance(payload[key], str):
            self.fail(f"{path}.{key}", "must be a string")

    def number(
        self,
        payload: dict[str, Any],
        key: str,
        path: str,
        *,
        positive: bool = False,
        integer: bool = False,
    ) -> None:
        if key not in payload:
            self.fail(f"{path}.{key}", "is required")
            return
        value = payload[key]
        if isinstance(value, bool) or not isinstance(value, int | float):
            self.fail(f"{path}.{key}", "must be a number")
            return
        if integer and not (isinstance(value, int) or float(value).is_integer()):
            self.fail(f"{path}.{key}", "must be an integer")
        if positive and value <= 0:
            self.fail(f"{path}.{key}", "must be > 0")

    def choice(
        self,
        payload: dict[str, Any],
        key: str,
        path: str,
        choices: tuple[str, ...],
    ) -> None:
        if payload.get(key) not in choices:
            self.fail(f"{path}.{key}", f"must be one of: {', '.join(choices)}")

    def boolean(self, payload: dict[str, Any], key: str, path: str) -> None:
        if not isinstance(payload.get(key), bool):
            self.fail(f"{path}.{key}", "must be a boolean")

    def slots(
        self,
        payload: dict[str, Any],
        key: str,
        path: str,
        *,
        integers: tuple[str, ...],
        numbers: tuple[str, ...],
        strings: tuple[str, ...],
    ) -> None:
        items = payload.get(key)
        if not isinstance(items, list):
            self.fail(f"{path}.{key}", "must be an array")
            return
        for index, item in enumerate(items):
            item_path = f"{path}.{key}[{index}]"
            slot = self.obj(item, item_path)
            if slot is None:
                continue
            for name in integers:
                self.number(slot, name, item_path, integer=True)
            for name in numbers:
                self.number(slot, name, item_path)
            for name in strings:
                self.string(slot, name, item_path)


def validate_submission(payload: Any) -> ValidationReport:
    """Validate a raw submission payload and build the normalized ``Submission``."""

    checker = _Checker()
    root = checker.obj(payload, "$")
    if root is None:
        return ValidationReport(submission=None, errors=checker.errors)

    endpoint: str | None = None
    raw_url = root.get("nightscout_url")
    if not isinstance(raw_url, str):
        checker.fail("$.nightscout_url", "must be a string")
    else:
        try:
            endpoint = normalize_endpoint(raw_url)
        except ValueError as error:
            checker.fail("$.nightscout_url", str(error))
    checker.string(root, "nightscout_access_token", "$", optional=True)

    settings = checker.obj(root.get("settings"), "$.settings")
    if settings is not None:
        _check_settings(checker, settings)

    if checker.errors or endpoint is None or settings is None:
        return ValidationReport(submission=None, errors=checker.errors)

    token = root.get("nightscout_access_token") or None
    job_settings = JobSettings.from_payload(
        {**settings, "oaps_profile": settings["oaps_profile_data"]},
    )
    return ValidationReport(
        submission=Submission(endpoint=endpoint, settings=job_settings, access_token=token),
    )


def _check_settings(checker: _Checker, settings: dict[str, Any]) -> None:
    path = "$.settings"
    checker.number(settings, "autosens_min", path, positive=True)
    checker.number(settings, "autosens_max", path, positive=True)
    checker.string(settings, "profile_name", path)
    checker.number(settings, "min_5m_carbimpact", path, positive=True, integer=True)
    checker.number(settings, "pump_basal_increment", path)
    checker.boolean(settings, "uam_as_basal", path)
    checker.choice(settings, "insulin_type", path, INSULIN_TYPES)

    checker.number(settings, "autotune_days", path)
    days = settings.get("autotune_days")
    if isinstance(days, int | float) and not isinstance(days, bool):
        if not 0 < days <= MAX_AUTOTUNE_DAYS:
            checker.fail(f"{path}.autotune_days", f"must be in (0, {MAX_AUTOTUNE_DAYS}]")

    if "email_address" in settings and settings["email_address"] is not None:
        email = settings["email_address"]
        if not isinstance(email, str) or not _EMAIL_PATTERN.match(email):
            checker.fail(f"{path}.email_address", "must be an email address")

    profile = checker.obj(settings.get("oaps_profile_data"), f"{path}.oaps_profile_data")
    if profile is not None:
        _check_oaps_profile(checker, profile, f"{path}.oaps_profile_data")


def _check_oaps_profile(checker: _Checker, profile: dict[str, Any], path: str) -> None:
    checker.number(profile, "autosens_max", path)
    checker.number(profile, "autosens_min", path)
    checker.number(profile, "carb_ratio", path)
    checker.number(profile, "dia", path, positive=True, integer=True)
    checker.number(profile, "min_5m_carbimpact", path, positive=True, integer=True)
    checker.choice(profile, "curve", path, INSULIN_TYPES)
    checker.choice(profile, "out_units", path, GLUCOSE_UNITS)

    checker.string(profile, "timezone", path)
    timezone = profile.get("timezone")
    if isinstance(timezone, str):
        try:
            ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError):
            checker.fail(f"{path}.timezone", f"unknown time zone {timezone!r}")

    checker.slots(
        profile,
        "basalprofile",
        path,
        integers=("i", "minutes"),
        numbers=("rate",),
        strings=("start",),
    )

    bg_targets = checker.obj(profile.get("bg_targets"), f"{path}.bg_targets")
    if bg_targets is not None:
        target_path = f"{path}.bg_targets"
        checker.choice(bg_targets, "units", target_path, GLUCOSE_UNITS)
        checker.choice(bg_targets, "user_preferred_units", target_path, GLUCOSE_UNITS)
        checker.slots(
            bg_targets,
            "targets",
            target_path,
            integers=("i", "offset"),
            numbers=("low", "min_bg", "high", "max_bg"),
            strings=("start",),
        )

    carb_ratios = checker.obj(profile.get("carb_ratios"), f"{path}.carb_ratios")
    if carb_ratios is not None:
        ratios_path = f"{path}.carb_ratios"
        checker.number(carb_ratios, "first", ratios_path, positive=True, integer=True)
        checker.string(carb_ratios, "units", ratios_path)
        checker.slots(
            carb_ratios,
            "schedule",
            ratios_path,
            integers=("i", "offset"),
            numbers=("ratio",),
            strings=("start",),
        )

    isf_profile = checker.obj(profile.get("isfProfile"), f"{path}.isfProfile")
    if isf_profile is not None:
        isf_path = f"{path}.isfProfile"
        checker.number(isf_profile, "first", isf_path, positive=True, integer=True)
        checker.slots(
            isf_profile,
            "sensitivities",
            isf_path,
            integers=("i", "offset"),
            numbers=("sensitivity",),
            strings=("start",),
        )
