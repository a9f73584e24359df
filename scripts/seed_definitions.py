#!/usr/bin/env python3
"""
Seed approval definitions and pipeline templates from a configuration set.

Creates the tables if needed, then for every definition YAML file either
publishes a first version, publishes a new version when the schema
changed, or leaves the published version alone.  Pipeline templates are
registered (identical re-registration is a no-op).

Usage:
    approval-seed
    approval-seed --config path/to/engine.yaml --set-dir path/to/set
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from approval_config import (
    DEFAULT_SET_DIR,
    get_engine_settings,
    load_definition_specs,
    load_pipeline_templates,
)
from approval_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    transactional,
)
from approval_kernel.domain.definition import DefinitionSpec
from approval_kernel.exceptions import ApprovalEngineError, DefinitionNotFoundError
from approval_kernel.logging_config import configure_logging, get_logger
from approval_kernel.services.definition_store import compute_schema_hash
from approval_services.orchestrator import ServiceOrchestrator
from approval_services.rollback_coordinator import RollbackCoordinator

logger = get_logger("scripts.seed")

SEED_ACTOR = "system.seed"


def seed_definition(session_factory, spec: DefinitionSpec, actor_id: str) -> str:
    """Publish ``spec`` unless the same schema is already published.

    Returns one of ``created``, ``revised`` or ``unchanged``.
    """
    with transactional(session_factory) as session:
        store = ServiceOrchestrator(session).definitions
        try:
            current = store.get(spec.code)
        except DefinitionNotFoundError:
            current = None
        if current is not None and current.schema_hash == compute_schema_hash(spec):
            return "unchanged"
        if current is None:
            draft = store.create_draft(spec, actor_id)
        else:
            draft = store.revise(current.definition_id, actor_id, spec)
        store.publish(draft.definition_id, actor_id)
        return "created" if current is None else "revised"


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Seed approval definitions and pipeline templates.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Engine YAML (default: $APPROVAL_ENGINE_CONFIG or the packaged default)",
    )
    parser.add_argument(
        "--set-dir",
        type=Path,
        default=DEFAULT_SET_DIR,
        help="Directory holding definitions/*.yaml and pipelines.yaml",
    )
    parser.add_argument("--actor", default=SEED_ACTOR, help="Actor id recorded in the audit trail")
    args = parser.parse_args(argv)

    settings = get_engine_settings(args.config)
    configure_logging(level=settings.log_level)
    engine = init_engine_from_url(settings.database_url)
    create_tables(engine)
    session_factory = get_session_factory()

    try:
        for spec in load_definition_specs(args.set_dir / "definitions"):
            result = seed_definition(session_factory, spec, args.actor)
            print(f"  {spec.code:<24} {result}")
            logger.info(
                "definition_seeded",
                extra={"definition_code": spec.code, "result": result},
            )

        pipelines_file = args.set_dir / "pipelines.yaml"
        if pipelines_file.exists():
            coordinator = RollbackCoordinator(session_factory)
            for template in load_pipeline_templates(pipelines_file):
                coordinator.register_template(template, args.actor)
                print(f"  {template.code:<24} registered")
    except ApprovalEngineError as exc:
        print(f"Seeding failed [{exc.code}]: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
