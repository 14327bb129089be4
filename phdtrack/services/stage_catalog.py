"""
Stage Catalog — the fixed PhD milestone sequence and its form requirements.

The catalog is an immutable value built once at import time and shared by
reference. ``StageCatalog.validate()`` and ``validate_form_definitions()``
run during ``create_app`` so a broken configuration stops the process at
startup instead of surfacing on the first request.

Usage:
    from phdtrack.services.stage_catalog import CATALOG, FORM_DEFINITIONS

    CATALOG.next_stage("gec_formation")        # "comprehensive_exam"
    CATALOG.required_forms("comprehensive_exam")  # ("PHDEE03", "PHDEE1")
    FORM_DEFINITIONS["PHDEE02-A"].required_channels  # frozenset({"supervisor"})
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from sqlalchemy import select

from phdtrack.core.exceptions import ConfigurationError, InvalidStage
from phdtrack.models import db
from phdtrack.models.workflow import CHANNELS, FormType

logger = logging.getLogger(__name__)


# ── Catalog value object ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class StageCatalog:
    """Totally ordered stages plus the form codes each stage requires."""

    stages: tuple[str, ...]
    requirements: Mapping[str, tuple[str, ...]]
    labels: Mapping[str, str] = field(default_factory=dict)

    def validate(self) -> "StageCatalog":
        if not self.stages:
            raise ConfigurationError("Stage catalog is empty")
        if len(set(self.stages)) != len(self.stages):
            raise ConfigurationError("Stage catalog contains duplicate stages")

        missing = [s for s in self.stages if s not in self.requirements]
        if missing:
            raise ConfigurationError(f"Stages without a requirements entry: {', '.join(missing)}")
        unknown = [s for s in self.requirements if s not in self.stages]
        if unknown:
            raise ConfigurationError(f"Requirements declared for unknown stages: {', '.join(unknown)}")

        owner: dict[str, str] = {}
        for stage in self.stages:
            for code in self.requirements[stage]:
                if code in owner:
                    raise ConfigurationError(
                        f"Form {code} is required by both {owner[code]} and {stage}"
                    )
                owner[code] = stage
        return self

    # ── Lookups ──────────────────────────────────────────────────────────

    def __contains__(self, stage: object) -> bool:
        return stage in self.requirements

    @property
    def first_stage(self) -> str:
        return self.stages[0]

    @property
    def last_stage(self) -> str:
        return self.stages[-1]

    def ordinal(self, stage: str) -> int:
        try:
            return self.stages.index(stage)
        except ValueError:
            raise InvalidStage(stage) from None

    def is_terminal(self, stage: str) -> bool:
        return self.ordinal(stage) == len(self.stages) - 1

    def next_stage(self, stage: str) -> str | None:
        idx = self.ordinal(stage)
        if idx + 1 >= len(self.stages):
            return None
        return self.stages[idx + 1]

    def required_forms(self, stage: str) -> tuple[str, ...]:
        if stage not in self.requirements:
            raise InvalidStage(stage)
        return self.requirements[stage]

    def stage_of(self, form_code: str) -> str | None:
        for stage in self.stages:
            if form_code in self.requirements[stage]:
                return stage
        return None

    def label(self, stage: str) -> str:
        return self.labels.get(stage) or stage.replace("_", " ").title()

    def to_list(self) -> list[dict]:
        return [
            {
                "stage": s,
                "label": self.label(s),
                "ordinal": i,
                "required_forms": list(self.requirements[s]),
            }
            for i, s in enumerate(self.stages)
        ]


def build_catalog(stages, requirements, labels=None) -> StageCatalog:
    """Freeze plain lists/dicts into a validated ``StageCatalog``."""
    return StageCatalog(
        stages=tuple(stages),
        requirements=MappingProxyType({k: tuple(v) for k, v in requirements.items()}),
        labels=MappingProxyType(dict(labels or {})),
    ).validate()


# ── Form definitions ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class FormDefinition:
    code: str
    name: str
    stage: str
    required_channels: frozenset[str]
    prerequisites: tuple[str, ...] = ()
    max_submissions_per_user: int | None = 1
    required_fields: tuple[str, ...] = ()
    description: str = ""


def _form(code, name, stage, channels, prerequisites=(), max_submissions=1,
          required_fields=(), description=""):
    return FormDefinition(
        code=code,
        name=name,
        stage=stage,
        required_channels=frozenset(channels),
        prerequisites=tuple(prerequisites),
        max_submissions_per_user=max_submissions,
        required_fields=tuple(required_fields),
        description=description,
    )


def validate_form_definitions(catalog: StageCatalog, definitions: Mapping[str, FormDefinition]) -> None:
    """Cross-check form definitions against the catalog. Raises ``ConfigurationError``."""
    for stage in catalog.stages:
        for code in catalog.required_forms(stage):
            definition = definitions.get(code)
            if definition is None:
                raise ConfigurationError(f"Stage {stage} requires undefined form {code}")
            if definition.stage != stage:
                raise ConfigurationError(
                    f"Form {code} declares stage {definition.stage} but is required by {stage}"
                )
    for code, definition in definitions.items():
        if code != definition.code:
            raise ConfigurationError(f"Form definition key {code} does not match code {definition.code}")
        if definition.stage not in catalog:
            raise ConfigurationError(f"Form {code} belongs to unknown stage {definition.stage}")
        bad = definition.required_channels - set(CHANNELS)
        if bad:
            raise ConfigurationError(f"Form {code} requires unknown channels: {', '.join(sorted(bad))}")
        for prereq in definition.prerequisites:
            if prereq not in definitions:
                raise ConfigurationError(f"Form {code} has unknown prerequisite {prereq}")
            if prereq == code:
                raise ConfigurationError(f"Form {code} lists itself as a prerequisite")


# ═══════════════════════════════════════════════════════════════════════════
#  Default PhD (Electrical Engineering) programme
# ═══════════════════════════════════════════════════════════════════════════

SUPERVISOR_CONSENT_FORM = "PHDEE02-A"

_STAGES = (
    "supervision_consent",
    "course_registration",
    "gec_formation",
    "comprehensive_exam",
    "synopsis_defense",
    "research_candidacy",
    "thesis_writing",
    "thesis_evaluation",
    "thesis_defense",
    "graduation",
)

_REQUIREMENTS = {
    "supervision_consent": ["PHDEE02-A"],
    "course_registration": ["PHDEE02-B"],
    "gec_formation": ["PHDEE02-C"],
    "comprehensive_exam": ["PHDEE03", "PHDEE1"],
    "synopsis_defense": ["PHDEE04-A", "PHDEE04-B", "PHDEE2-A", "PHDEE2-B"],
    "research_candidacy": ["PHDEE04-C"],
    "thesis_writing": ["PHDEE3"],
    "thesis_evaluation": ["PHDEE2-C", "PHDEE3-A", "PHDEE3-B", "PHDEE4", "PHDEE4-A"],
    "thesis_defense": ["PHDEE05-A", "PHDEE5", "PHDEE05-B", "PHDEE6"],
    "graduation": ["PHDEE-COMPLETION", "PHDEE-TRANSCRIPT"],
}

_LABELS = {
    "gec_formation": "GEC Formation",
}

CATALOG = build_catalog(_STAGES, _REQUIREMENTS, _LABELS)

_DEFINITIONS = [
    _form("PHDEE02-A", "Supervisor Consent Form", "supervision_consent", {"supervisor"},
          required_fields=("supervisor_id", "research_area"),
          description="Supervisor agrees to supervise the candidate."),
    _form("PHDEE02-B", "Course Registration Form", "course_registration", {"supervisor", "admin"},
          prerequisites=("PHDEE02-A",), max_submissions=None,
          required_fields=("courses",)),
    _form("PHDEE02-C", "GEC Formation Form", "gec_formation", {"supervisor", "admin"},
          prerequisites=("PHDEE02-B",),
          required_fields=("committee_members",)),
    _form("PHDEE03", "Comprehensive Examination Request Form", "comprehensive_exam",
          {"supervisor", "admin"}, prerequisites=("PHDEE02-C",), max_submissions=2),
    _form("PHDEE1", "Comprehensive Exam Evaluation Form", "comprehensive_exam", {"gec", "admin"},
          prerequisites=("PHDEE03",), max_submissions=2),
    _form("PHDEE04-A", "Synopsis Defense Request Form", "synopsis_defense", {"supervisor", "admin"},
          prerequisites=("PHDEE1",), required_fields=("synopsis_title",)),
    _form("PHDEE04-B", "Synopsis Defense Scheduling Form", "synopsis_defense", {"admin"},
          prerequisites=("PHDEE04-A",)),
    _form("PHDEE2-A", "Synopsis Defense Evaluation Form", "synopsis_defense", {"gec"},
          prerequisites=("PHDEE04-B",)),
    _form("PHDEE2-B", "Synopsis Defense Full Committee Report", "synopsis_defense", {"gec", "admin"},
          prerequisites=("PHDEE2-A",)),
    _form("PHDEE04-C", "Research Candidacy Request Form", "research_candidacy", {"supervisor", "admin"},
          prerequisites=("PHDEE2-B",)),
    _form("PHDEE3", "GEC Meeting Minutes for Progress Evaluation", "thesis_writing",
          {"gec", "supervisor"}, prerequisites=("PHDEE04-C",), max_submissions=None),
    _form("PHDEE2-C", "PhD Thesis Plagiarism Check Form", "thesis_evaluation", {"admin"},
          prerequisites=("PHDEE3",), max_submissions=3),
    _form("PHDEE3-A", "PhD Thesis Evaluation Form", "thesis_evaluation", {"gec"},
          prerequisites=("PHDEE2-C",)),
    _form("PHDEE3-B", "PhD Thesis External Evaluation Request Form", "thesis_evaluation",
          {"supervisor", "admin"}, prerequisites=("PHDEE3-A",)),
    _form("PHDEE4", "PhD Thesis Evaluation Form (External Evaluators)", "thesis_evaluation", {"admin"},
          prerequisites=("PHDEE3-B",)),
    _form("PHDEE4-A", "PhD Thesis Submission Form (DPRC)", "thesis_evaluation", {"admin"},
          prerequisites=("PHDEE4",)),
    _form("PHDEE05-A", "PhD Thesis Defense Scheduling Form (In-house)", "thesis_defense", {"admin"},
          prerequisites=("PHDEE4-A",)),
    _form("PHDEE5", "In House Defense Evaluation Form", "thesis_defense", {"gec"},
          prerequisites=("PHDEE05-A",)),
    _form("PHDEE05-B", "PhD Thesis Defense Scheduling Form (Public)", "thesis_defense", {"admin"},
          prerequisites=("PHDEE5",)),
    _form("PHDEE6", "PhD Thesis Defense Evaluation Form (Public)", "thesis_defense", {"gec", "admin"},
          prerequisites=("PHDEE05-B",)),
    _form("PHDEE-COMPLETION", "PhD Degree Completion Form", "graduation", {"admin"},
          prerequisites=("PHDEE6",)),
    _form("PHDEE-TRANSCRIPT", "Final Transcript Request", "graduation", {"admin"},
          prerequisites=("PHDEE-COMPLETION",)),
]

FORM_DEFINITIONS: Mapping[str, FormDefinition] = MappingProxyType({d.code: d for d in _DEFINITIONS})


def validate_default_configuration() -> None:
    """Startup check for the shipped catalog and form table."""
    CATALOG.validate()
    validate_form_definitions(CATALOG, FORM_DEFINITIONS)
    logger.debug("Stage catalog valid: %d stages, %d forms", len(CATALOG.stages), len(FORM_DEFINITIONS))


# ── Seeding ──────────────────────────────────────────────────────────────────


def seed_form_types(definitions: Mapping[str, FormDefinition] | None = None) -> int:
    """Insert or refresh ``FormType`` rows from the form definitions.

    Existing rows are updated in place so channel or quota changes take
    effect; ``is_active`` is left as the operator set it. The caller commits.

    Returns:
        Number of newly created rows.
    """
    definitions = FORM_DEFINITIONS if definitions is None else definitions
    existing = {
        ft.code: ft
        for ft in db.session.execute(select(FormType)).scalars()
    }
    created = 0
    for definition in definitions.values():
        ft = existing.get(definition.code)
        if ft is None:
            ft = FormType(code=definition.code, is_active=True)
            db.session.add(ft)
            created += 1
        ft.name = definition.name
        ft.description = definition.description
        ft.stage = definition.stage
        ft.prerequisite_codes = list(definition.prerequisites)
        ft.max_submissions_per_user = definition.max_submissions_per_user
        for ch in CHANNELS:
            setattr(ft, f"requires_{ch}_approval", ch in definition.required_channels)
    db.session.flush()
    logger.info("Form types seeded", extra={"operation": "seed_form_types"})
    return created
