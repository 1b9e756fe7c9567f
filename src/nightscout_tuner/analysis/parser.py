"""Parser for autotune recommendation logs.

The log is a plain-text table written by ``oref0-autotune-recommends-report``::

    Parameter      | Pump           | Autotune       | Days Missing
    ---------------------------------------------------------------------
    ISF [mg/dL/U]  | 45.000         | 42.370         |
    Carb Ratio[g/U]| 10.000         | 9.200          |
      00:00        | 0.650          | 0.700          | 0
      00:30        |                |                |

Parsing is permissive: lines that are not recommendations, or that cannot be
converted, are skipped instead of failing the whole run.
"""

from __future__ import annotations

import logging
import math
import string
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from nightscout_tuner.jobs.models import (
    AutotuneOptions,
    AutotuneResult,
    Recommendation,
    RecommendationKind,
)

logger = logging.getLogger(__name__)

ISF_LINE_START = "ISF"
CARB_RATIO_LINE_START = "Carb Ratio"
BASAL_TIME_FORMAT = "%H:%M"

# Half-hour basal rows carry no values in these columns.
_BASAL_VALUE_COLUMNS = (1, 2, 3)


def round_recommendation(value: float) -> float:
    """Snap a recommended value to the 0.05 dosing step used by pumps."""

    return round(math.ceil(value * 20 - 0.5) / 20, 2)


def make_recommendation(
    kind: RecommendationKind,
    current: float,
    recommended: float,
    **basal_fields: object,
) -> Recommendation:
    return Recommendation(
        kind=kind,
        current_value=current,
        recommended_value=recommended,
        rounded_recommendation=round_recommendation(recommended),
        **basal_fields,  # type: ignore[arg-type]
    )


def parse_line(line: str) -> Recommendation | None:
    """Parse one log line, returning ``None`` for anything that is not a recommendation."""

    stripped = line.strip()
    if not stripped:
        return None

    # Columns are: [parameter, pump, autotune, days_missing]
    columns = stripped.split("|")
    try:
        if stripped.startswith(ISF_LINE_START):
            return make_recommendation(
                RecommendationKind.ISF,
                float(columns[1].strip()),
                float(columns[2].strip()),
            )
        if stripped.startswith(CARB_RATIO_LINE_START):
            return make_recommendation(
                RecommendationKind.CARB_RATIO,
                float(columns[1].strip()),
                float(columns[2].strip()),
            )
        if stripped[0] in string.digits:
            return _parse_basal(columns)
    except (IndexError, ValueError):
        logger.debug("Skipping malformed recommendation line: %r", stripped)
    return None


def _parse_basal(columns: list[str]) -> Recommendation | None:
    if len(columns) <= max(_BASAL_VALUE_COLUMNS):
        return None
    for index in _BASAL_VALUE_COLUMNS:
        if not columns[index].strip():
            return None

    when = datetime.strptime(columns[0].strip(), BASAL_TIME_FORMAT).time()
    return make_recommendation(
        RecommendationKind.BASAL,
        float(columns[1].strip()),
        float(columns[2].strip()),
        time_of_day=when,
        days_missing=int(columns[3].strip()),
    )


def parse_lines(lines: Iterable[str]) -> list[Recommendation]:
    recommendations: list[Recommendation] = []
    for line in lines:
        recommendation = parse_line(line)
        if recommendation is not None:
            recommendations.append(recommendation)
    return recommendations


def parse_log(path: Path, options: AutotuneOptions) -> AutotuneResult:
    """Read an autotune recommendations log into an ``AutotuneResult``."""

    with path.open("r", encoding="utf-8", errors="replace") as handle:
        recommendations = parse_lines(handle)
    logger.info(
        "Parsed %d recommendations from %s (job_id=%s)",
        len(recommendations),
        path,
        options.job_id,
    )
    return AutotuneResult(recommendations=tuple(recommendations), options=options)
