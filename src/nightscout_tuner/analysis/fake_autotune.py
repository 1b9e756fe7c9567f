"""Local stand-in for ``oref0-autotune`` used by demos and integration tests.

Behaviour is driven by environment variables:

* ``FAKE_AUTOTUNE_EXIT_CODE``: exit code to return (default ``0``).
* ``FAKE_AUTOTUNE_SLEEP_SECONDS``: seconds to sleep before finishing.
* ``FAKE_AUTOTUNE_LOG``: path of a recommendations log to copy instead of the sample.
* ``FAKE_AUTOTUNE_SKIP_LOG``: when ``1``, exit without writing the log.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path

SAMPLE_RECOMMENDATIONS_LOG = """\
Parameter      | Pump           | Autotune       | Days Missing
---------------------------------------------------------------------
ISF [mg/dL/U]  | 45.000         | 42.370         |
Carb Ratio[g/U]| 10.000         | 9.200          |
  00:00        | 0.650          | 0.700          | 0
  00:30        |                |                |
  01:00        | 0.650          | 0.680          | 1
"""


def main(argv: list[str] | None = None) -> int:
    """Write a deterministic recommendations log into the autotune directory layout."""

    parser = argparse.ArgumentParser(prog="fake-autotune")
    parser.add_argument("--dir", required=True)
    parser.add_argument("--ns-host", required=True)
    parser.add_argument("--start-date", required=True)
    parser.add_argument("--end-date", required=True)
    parser.add_argument("--categorize-uam-as-basal", choices=("true", "false"), default="false")
    args = parser.parse_args(argv)

    workdir = Path(args.dir)
    autotune_dir = workdir / "autotune"
    if not (autotune_dir / "profile.json").is_file():
        print(f"missing {autotune_dir / 'profile.json'}", file=sys.stderr)
        return 2

    sleep_seconds = float(os.getenv("FAKE_AUTOTUNE_SLEEP_SECONDS", "0"))
    if sleep_seconds > 0:
        time.sleep(sleep_seconds)

    invocation = {
        "argv": sys.argv[1:] if argv is None else argv,
        "ns_host": args.ns_host,
        "start_date": args.start_date,
        "end_date": args.end_date,
        "categorize_uam_as_basal": args.categorize_uam_as_basal,
        "api_secret_present": bool(os.getenv("API_SECRET")),
    }
    (autotune_dir / "fake_invocation.json").write_text(json.dumps(invocation), "utf-8")
    print(f"Running autotune for {args.ns_host} {args.start_date}..{args.end_date}")

    exit_code = int(os.getenv("FAKE_AUTOTUNE_EXIT_CODE", "0"))
    if exit_code != 0:
        print(f"autotune failed: ERROR fetching {args.ns_host}", file=sys.stderr)
        return exit_code

    if os.getenv("FAKE_AUTOTUNE_SKIP_LOG", "0") == "1":
        return 0

    source = os.getenv("FAKE_AUTOTUNE_LOG")
    log_text = Path(source).read_text("utf-8") if source else SAMPLE_RECOMMENDATIONS_LOG
    (autotune_dir / "autotune_recommendations.log").write_text(log_text, "utf-8")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
