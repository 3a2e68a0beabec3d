from __future__ import annotations

import argparse
import json
import logging

from crowsnest.config import (
    RUN_REQUIRED_ENVS,
    assert_required_envs,
    load_seed_urls,
    load_settings,
    mask_secret,
    missing_envs,
)
from crowsnest.pipeline import run_pipeline
from crowsnest.storage import StateStore


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="crowsnest")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Crawl the seed URLs and store new job offers")
    run_parser.add_argument(
        "--seed",
        action="append",
        default=None,
        metavar="URL",
        help="Seed URL to crawl (repeatable); overrides SEED_URLS and the scraping config",
    )

    subparsers.add_parser("healthcheck", help="Validate config and local runtime readiness")

    schemas_parser = subparsers.add_parser("schemas", help="Print the cached extraction schemas of a domain")
    schemas_parser.add_argument("domain")

    return parser


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _cmd_run(args: argparse.Namespace) -> int:
    settings = load_settings()
    _configure_logging(settings.log_level)
    assert_required_envs(RUN_REQUIRED_ENVS)

    seed_urls = args.seed or load_seed_urls(settings)
    if not seed_urls:
        print("no seed URLs configured (use --seed, SEED_URLS or the scraping config)")
        return 1

    result = run_pipeline(settings, seed_urls=seed_urls)

    print(
        "run summary:",
        f"seeds={len(result.seed_results)}",
        f"saved={result.saved_count}",
        f"failed_seeds={result.failed_seed_count}",
    )
    for message in result.error_messages:
        print(f"- {message}")

    if result.failed_seed_count > 0 and result.success_seed_count == 0:
        return 1
    return 0


def _cmd_healthcheck() -> int:
    settings = load_settings()
    missing = missing_envs(RUN_REQUIRED_ENVS)
    if missing:
        print("missing required env vars:", ", ".join(missing))
        return 1
    print(f"llm: {settings.llm_model} at {settings.llm_base_url} (key {mask_secret(settings.llm_api_key)})")

    try:
        with StateStore(settings.db_path) as store:
            offer_count = store.count_offers()
    except Exception as exc:
        print(f"state db check failed: {exc}")
        return 1
    print(f"state db ready: {settings.db_path} ({offer_count} offers)")

    seed_urls = load_seed_urls(settings)
    if not seed_urls:
        print("no seed URLs configured; pass --seed to 'crowsnest run'")
    else:
        print(f"seed urls: {len(seed_urls)}")
    print("healthcheck passed")
    return 0


def _cmd_schemas(args: argparse.Namespace) -> int:
    settings = load_settings()
    with StateStore(settings.db_path) as store:
        schemas = store.find_schemas(args.domain)

    if not schemas:
        print(f"no schemas cached for {args.domain}")
        return 1
    for page_type, schema in sorted(schemas.items(), key=lambda item: item[0].value):
        print(f"[{page_type.value}]")
        print(json.dumps({"selectors": schema.selectors, "staticValues": schema.static_values}, indent=2))
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "run":
            return _cmd_run(args)
        if args.command == "healthcheck":
            return _cmd_healthcheck()
        if args.command == "schemas":
            return _cmd_schemas(args)
    except ValueError as exc:
        print(exc)
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
