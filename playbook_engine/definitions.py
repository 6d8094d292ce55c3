"""Definition store: publishing, validating and loading playbook definitions."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import ValidationError as PydanticValidationError

from .contracts import check_contract
from .errors import NotFoundError, ValidationError
from .models import (
    DefinitionStatus,
    PlaybookDefinition,
    StepDefinition,
    StepType,
    utcnow,
)
from .persistence import ExecutionRepository

logger = logging.getLogger(__name__)


def definition_problems(definition: PlaybookDefinition) -> List[str]:
    """Structural problems that make ``definition`` unpublishable."""
    problems: List[str] = []
    if not definition.steps:
        problems.append("playbook has no steps")

    ids = definition.step_ids()
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        problems.append(f"duplicate step ids: {', '.join(duplicates)}")
    known = set(ids)

    problems.extend(check_contract(definition.input_contract, "input_contract"))
    problems.extend(check_contract(definition.output_contract, "output_contract"))

    for step in definition.steps:
        problems.extend(_step_problems(step, known))
    return problems


def _step_problems(step: StepDefinition, known: set[str]) -> List[str]:
    problems: List[str] = []
    where = f"step '{step.id}'"
    if step.type is StepType.TASK and step.assignee is None:
        problems.append(f"{where}: task steps need an assignee")
    if step.type is StepType.AUTOMATED and not step.action:
        problems.append(f"{where}: automated steps need an action")
    if step.type is StepType.WAIT and step.wait_seconds is None:
        problems.append(f"{where}: wait steps need wait_seconds")
    if step.type is StepType.DECISION:
        rule = step.next_step_rule
        if rule is None or not (rule.branches or rule.next_step_id):
            problems.append(f"{where}: decision steps need branches")

    if step.next_step_rule is not None:
        for target in step.next_step_rule.referenced_step_ids():
            if target not in known:
                problems.append(f"{where}: unknown next step '{target}'")

    problems.extend(check_contract(step.input_contract, f"{where} input_contract"))
    problems.extend(check_contract(step.output_contract, f"{where} output_contract"))
    return problems


class DefinitionStore:
    """Loads and validates :class:`PlaybookDefinition` versions.

    Published versions are immutable. An execution binds to the version that
    was active when it started, so deprecated versions stay loadable by
    exact version number.
    """

    def __init__(self, repository: ExecutionRepository) -> None:
        self._repository = repository

    async def publish(
        self, definition: PlaybookDefinition, published_by: Optional[str] = None
    ) -> PlaybookDefinition:
        problems = definition_problems(definition)
        if problems:
            raise ValidationError(
                f"Definition {definition.id} v{definition.version} is invalid: "
                + "; ".join(problems),
                errors=[{"message": p} for p in problems],
                organization_id=definition.organization_id,
                resource_id=definition.id,
            )

        existing = await self._repository.get_definition(
            definition.organization_id, definition.id, definition.version
        )
        if existing is not None and existing.status != DefinitionStatus.DRAFT:
            raise ValidationError(
                f"Definition {definition.id} v{definition.version} is already published",
                organization_id=definition.organization_id,
                resource_id=definition.id,
            )

        published = definition.model_copy(
            update={
                "status": DefinitionStatus.ACTIVE,
                "published_at": utcnow(),
                "created_by": definition.created_by or published_by,
            }
        )
        await self._repository.save_definition(published)
        logger.info(
            f"Published playbook {published.id} v{published.version} "
            f"for organization_id={published.organization_id}"
        )
        return published

    async def deprecate(
        self, organization_id: str, playbook_id: str, version: int
    ) -> PlaybookDefinition:
        definition = await self.get_definition(organization_id, playbook_id, version)
        deprecated = definition.model_copy(update={"status": DefinitionStatus.DEPRECATED})
        await self._repository.save_definition(deprecated)
        logger.info(f"Deprecated playbook {playbook_id} v{version}")
        return deprecated

    async def get_definition(
        self, organization_id: str, playbook_id: str, version: Optional[int] = None
    ) -> PlaybookDefinition:
        definition = await self._repository.get_definition(
            organization_id, playbook_id, version
        )
        if definition is None:
            label = playbook_id if version is None else f"{playbook_id} v{version}"
            raise NotFoundError(
                "PlaybookDefinition", label, organization_id=organization_id
            )
        return definition

    async def list_definitions(
        self, organization_id: str, playbook_id: Optional[str] = None
    ) -> List[PlaybookDefinition]:
        return await self._repository.list_definitions(organization_id, playbook_id)


def load_definitions_file(
    path: str | Path, organization_id: Optional[str] = None
) -> List[PlaybookDefinition]:
    """Parse one definition or a list of definitions from a YAML file.

    ``organization_id`` fills in definitions that do not name a tenant.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or []
    items = data if isinstance(data, list) else [data]
    definitions = []
    for item in items:
        if organization_id and "organization_id" not in item:
            item = {**item, "organization_id": organization_id}
        try:
            definitions.append(PlaybookDefinition.model_validate(item))
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid definition in {path}: {e.error_count()} error(s)",
                errors=[
                    {"path": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                    for err in e.errors()
                ],
            ) from e
    return definitions
