"""
Configuration Loader (``approval_config.loader``).

Responsibility
--------------
Loads YAML files and parses them into typed objects: ``EngineSettings``
for the engine itself, ``DefinitionSpec`` for seed approval definitions,
and ``PipelineTemplate`` for pipeline templates.  Definitions and
templates go through the kernel schema codec, so YAML and JSON inputs are
validated by exactly the same rules.

Architecture position
---------------------
**Config layer** -- infrastructure tooling.  Depends on the kernel domain
codec only; the kernel never imports from ``approval_config``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys in parsed dict  -> ``KeyError`` propagates.
* Invalid definition or template content  -> ``DefinitionValidationError``
  / ``PipelineTemplateError`` from the codec.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from approval_config.schema import EngineSettings
from approval_kernel.domain.definition import DefinitionSpec
from approval_kernel.domain.pipeline import PipelineTemplate
from approval_kernel.domain.schema_codec import (
    parse_definition_spec,
    parse_pipeline_template,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_engine_settings(data: dict[str, Any]) -> EngineSettings:
    """Parse ``EngineSettings`` from the ``engine`` section of a config file."""
    engine = data["engine"]
    return EngineSettings(
        database_url=engine["database_url"],
        directory_timeout_seconds=float(engine.get("directory_timeout_seconds", 2.0)),
        notification_max_retries=int(engine.get("notification_max_retries", 3)),
        log_level=str(engine.get("log_level", "INFO")).upper(),
        config_id=str(data.get("config_id", "default")),
    )


def load_engine_settings(path: Path) -> EngineSettings:
    return parse_engine_settings(load_yaml_file(path))


def load_definition_specs(directory: Path) -> list[DefinitionSpec]:
    """
    Parse every ``*.yaml`` file under ``directory`` as one definition.

    Files are read in name order so seeding is deterministic.
    """
    specs = []
    for path in sorted(Path(directory).glob("*.yaml")):
        specs.append(parse_definition_spec(load_yaml_file(path)))
    return specs


def load_pipeline_templates(path: Path) -> list[PipelineTemplate]:
    """Parse the ``pipelines`` list of a YAML file."""
    data = load_yaml_file(path)
    return [parse_pipeline_template(raw) for raw in data["pipelines"]]
