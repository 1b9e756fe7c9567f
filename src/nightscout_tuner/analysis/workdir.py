"""Per-job working directories in the layout oref0-autotune expects."""

from __future__ import annotations

import json
import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

PROFILE_RELATIVE_PATHS = (
    Path("settings") / "profile.json",
    Path("settings") / "pumpprofile.json",
    Path("autotune") / "profile.json",
)
RECOMMENDATIONS_LOG_RELATIVE_PATH = Path("autotune") / "autotune_recommendations.log"
STDOUT_LOG_RELATIVE_PATH = Path("autotune") / "autotune_stdout.log"


@dataclass(slots=True)
class AnalysisWorkdir:
    """Materialized directory for one autotune run."""

    path: Path
    profile_paths: tuple[Path, ...]
    recommendations_log_path: Path
    stdout_path: Path


class AnalysisWorkdirManager:
    """Creates a fresh, exclusive directory for every run; never reuses one."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def create(self, *, job_id: str, profile: dict[str, Any]) -> AnalysisWorkdir:
        self.root_dir.mkdir(parents=True, exist_ok=True)
        base_dir = Path(tempfile.mkdtemp(prefix=f"{job_id}-", dir=self.root_dir))

        # autotune reads the pump profile and starts from autotune/profile.json
        profile_text = json.dumps(profile, ensure_ascii=False, indent=2, sort_keys=True)
        profile_paths: list[Path] = []
        for relative in PROFILE_RELATIVE_PATHS:
            target = base_dir / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(profile_text, "utf-8")
            profile_paths.append(target)

        logger.debug("Materialized autotune workdir %s for job %s", base_dir, job_id)
        return AnalysisWorkdir(
            path=base_dir,
            profile_paths=tuple(profile_paths),
            recommendations_log_path=base_dir / RECOMMENDATIONS_LOG_RELATIVE_PATH,
            stdout_path=base_dir / STDOUT_LOG_RELATIVE_PATH,
        )

    def cleanup(self, workdir: AnalysisWorkdir) -> None:
        try:
            shutil.rmtree(workdir.path)
        except OSError as exc:
            logger.warning("Could not remove autotune workdir %s: %s", workdir.path, exc)
