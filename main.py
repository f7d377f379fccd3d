import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError

from calcgen.config import Settings, make_connector
from calcgen.errors import CalcGenError
from calcgen.llm.response_cache import ResponseCache
from calcgen.models.request import CalcRequest
from calcgen.services.orchestrator import CalcPlanOrchestrator
from calcgen.utils.logger_config import setup_logging

logger = logging.getLogger("calcgen")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Generate a calculation module for one character.")
    parser.add_argument("request", help="Path to the request JSON (tables, samples, descriptions).")
    parser.add_argument("-o", "--output", help="Where to write the module; stdout when omitted.")
    parser.add_argument("--no-llm", action="store_true", help="Skip the generator and use the heuristic plan.")
    parser.add_argument("--cache-dir", help="Response cache directory (overrides CALCGEN_CACHE_DIR).")
    parser.add_argument("--no-cache", action="store_true", help="Do not read or write the response cache.")
    parser.add_argument("--force", action="store_true", help="Ignore cached replies and overwrite them.")
    parser.add_argument("--max-attempts", type=int, help="Generator attempts before falling back.")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    load_dotenv()
    args = parse_args(argv)
    settings = Settings.from_env()
    setup_logging(settings.log_level)

    try:
        with open(args.request, "r", encoding="utf-8") as f:
            request = CalcRequest.model_validate(json.load(f))
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        logger.error(f"Could not load request {args.request}: {e}")
        return 2

    connector = None if args.no_llm else make_connector(settings)
    cache_dir = args.cache_dir or settings.cache_dir
    cache = ResponseCache(cache_dir, force=args.force) if cache_dir and not args.no_cache else None
    orchestrator = CalcPlanOrchestrator(
        connector=connector,
        cache=cache,
        max_attempts=args.max_attempts or settings.max_attempts,
        created_by=settings.created_by,
    )

    try:
        result = orchestrator.build(request)
    except CalcGenError as e:
        logger.error(f"No module produced for {request.name}: {e}")
        return 1

    if args.output:
        out = Path(args.output)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(result.source, encoding="utf-8")
        logger.info(f"Wrote {out} (generator used: {result.used_llm}, attempts: {result.attempts})")
    else:
        sys.stdout.write(result.source)
    if result.error:
        logger.warning(f"Completed with error: {result.error}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
