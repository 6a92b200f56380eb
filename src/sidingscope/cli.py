from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path
from typing import Optional, Sequence

from dotenv import load_dotenv

from .config import Config, load_config
from .reporting import make_summary_text, write_outputs
from .takeoff import TakeoffCalculator, TakeoffRequest

logger = logging.getLogger(__name__)


def _load_request(path: Path) -> TakeoffRequest:
    with Path(path).open("r", encoding="utf-8") as fh:
        payload = json.load(fh)
    if not isinstance(payload, dict):
        raise ValueError(f"Takeoff request {path} must be a JSON object")
    return TakeoffRequest.from_dict(payload)


def run(request_path: Path, config: Config, calculator: Optional[TakeoffCalculator] = None) -> int:
    request = _load_request(request_path)
    calculator = calculator or TakeoffCalculator.from_config(config)
    result = calculator.calculate(request)

    outputs = write_outputs(result, config.output_dir)
    logger.info(make_summary_text(result))
    for warning in result.metadata.get("warnings", []):
        logger.warning(" ! %s: %s", warning["code"], warning["message"])
    logger.info("Outputs written:")
    logger.info(" - %s", outputs["json"])
    logger.info(" - %s", outputs["csv"])
    return 0


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Compute a priced siding takeoff with auto-scope rules")
    parser.add_argument("--request", required=True, help="Path to the takeoff request JSON")
    parser.add_argument("--rules-file", help="JSON/YAML rules file used when the store is not configured")
    parser.add_argument("--pricing-file", help="CSV/JSON/XLSX pricing export used when the store is not configured")
    parser.add_argument("--output-dir", help="Directory for generated outputs")
    parser.add_argument("--markup-rate", type=float, help="Markup as a fraction (0.15) or percent (15)")
    parser.add_argument("--offline", action="store_true", help="Ignore store credentials and use local files only")
    parser.add_argument("-v", "--verbose", action="store_true", help="Increase logging verbosity")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    config = load_config(os.environ, args)
    log_level = logging.DEBUG if config.verbose else logging.INFO
    logging.basicConfig(level=log_level, format="%(message)s")
    try:
        return run(Path(args.request), config)
    except (OSError, ValueError) as exc:
        logger.error("Unable to compute takeoff: %s", exc)
        return 1
    except Exception:  # pragma: no cover
        logger.exception("Fatal error during takeoff calculation")
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
