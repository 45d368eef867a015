"""Quick demo script — replays sample_scenario.json against the Uttarakhand zones.

Usage:
    python safety_engine/examples/run_demo.py
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

# Ensure project root is on sys.path
project_root = Path(__file__).resolve().parent.parent.parent
sys.path.insert(0, str(project_root))

from safety_engine.geofence import load_zones
from safety_engine.main import Scenario, format_report, run_scenario


def main() -> None:
    examples = Path(__file__).resolve().parent
    sample_path = examples / "sample_scenario.json"
    if not sample_path.exists():
        print(f"Sample scenario not found at {sample_path}", file=sys.stderr)
        sys.exit(1)

    with open(sample_path) as f:
        raw = json.load(f)

    scenario = Scenario.model_validate(raw)
    # The scenario already carries its own copy of these two
    known = {z.id for z in scenario.zones}
    catalogue = [z for z in load_zones(examples / "uttarakhand_zones.json") if z.id not in known]

    result = run_scenario(scenario, catalogue)
    print(format_report(result))


if __name__ == "__main__":
    main()
