"""
Tests — stage catalog, form definitions and form type seeding.
"""

import dataclasses

import pytest
from sqlalchemy import func, select

from phdtrack.core.exceptions import ConfigurationError, InvalidStage
from phdtrack.models import db
from phdtrack.models.workflow import FormType
from phdtrack.services.stage_catalog import (
    CATALOG,
    FORM_DEFINITIONS,
    build_catalog,
    seed_form_types,
    validate_default_configuration,
    validate_form_definitions,
)


class TestCatalogLookups:
    def test_stage_order(self):
        assert CATALOG.first_stage == "supervision_consent"
        assert CATALOG.last_stage == "graduation"
        assert len(CATALOG.stages) == 10

    def test_next_stage(self):
        assert CATALOG.next_stage("supervision_consent") == "course_registration"
        assert CATALOG.next_stage("gec_formation") == "comprehensive_exam"
        assert CATALOG.next_stage("graduation") is None

    def test_terminal(self):
        assert CATALOG.is_terminal("graduation")
        assert not CATALOG.is_terminal("thesis_defense")

    def test_unknown_stage_raises_invalid_stage(self):
        with pytest.raises(InvalidStage):
            CATALOG.ordinal("postdoc")
        with pytest.raises(InvalidStage):
            CATALOG.required_forms("postdoc")
        assert "postdoc" not in CATALOG

    def test_required_forms(self):
        assert CATALOG.required_forms("comprehensive_exam") == ("PHDEE03", "PHDEE1")
        assert CATALOG.required_forms("graduation") == ("PHDEE-COMPLETION", "PHDEE-TRANSCRIPT")

    def test_stage_of(self):
        assert CATALOG.stage_of("PHDEE2-B") == "synopsis_defense"
        assert CATALOG.stage_of("NOPE") is None

    def test_labels(self):
        assert CATALOG.label("gec_formation") == "GEC Formation"
        assert CATALOG.label("thesis_writing") == "Thesis Writing"

    def test_catalog_is_read_only(self):
        with pytest.raises(TypeError):
            CATALOG.requirements["graduation"] = ()
        with pytest.raises(dataclasses.FrozenInstanceError):
            CATALOG.stages = ()

    def test_to_list(self):
        rows = CATALOG.to_list()
        assert rows[0] == {
            "stage": "supervision_consent",
            "label": "Supervision Consent",
            "ordinal": 0,
            "required_forms": ["PHDEE02-A"],
        }


class TestCatalogValidation:
    def test_default_configuration_is_valid(self):
        validate_default_configuration()

    def test_empty_catalog(self):
        with pytest.raises(ConfigurationError):
            build_catalog([], {})

    def test_duplicate_stage(self):
        with pytest.raises(ConfigurationError, match="duplicate"):
            build_catalog(["a", "a"], {"a": []})

    def test_stage_without_requirements_entry(self):
        with pytest.raises(ConfigurationError, match="b"):
            build_catalog(["a", "b"], {"a": []})

    def test_requirements_for_unknown_stage(self):
        with pytest.raises(ConfigurationError):
            build_catalog(["a"], {"a": [], "z": []})

    def test_form_required_by_two_stages(self):
        with pytest.raises(ConfigurationError, match="F1"):
            build_catalog(["a", "b"], {"a": ["F1"], "b": ["F1"]})

    def test_stage_with_no_forms_is_allowed(self):
        catalog = build_catalog(["a", "b"], {"a": [], "b": ["F1"]})
        assert catalog.required_forms("a") == ()

    def test_undefined_required_form(self):
        definitions = dict(FORM_DEFINITIONS)
        definitions.pop("PHDEE1")
        with pytest.raises(ConfigurationError, match="PHDEE1"):
            validate_form_definitions(CATALOG, definitions)

    def test_form_stage_mismatch(self):
        definitions = dict(FORM_DEFINITIONS)
        definitions["PHDEE1"] = dataclasses.replace(definitions["PHDEE1"], stage="gec_formation")
        with pytest.raises(ConfigurationError):
            validate_form_definitions(CATALOG, definitions)

    def test_unknown_channel(self):
        definitions = dict(FORM_DEFINITIONS)
        definitions["PHDEE1"] = dataclasses.replace(
            definitions["PHDEE1"], required_channels=frozenset({"dean"}),
        )
        with pytest.raises(ConfigurationError, match="dean"):
            validate_form_definitions(CATALOG, definitions)


class TestFormDefinitions:
    def test_consent_form_needs_supervisor_only(self):
        assert FORM_DEFINITIONS["PHDEE02-A"].required_channels == frozenset({"supervisor"})
        assert FORM_DEFINITIONS["PHDEE02-A"].prerequisites == ()

    def test_prerequisite_chain(self):
        assert FORM_DEFINITIONS["PHDEE02-B"].prerequisites == ("PHDEE02-A",)
        assert FORM_DEFINITIONS["PHDEE1"].prerequisites == ("PHDEE03",)

    def test_quotas(self):
        assert FORM_DEFINITIONS["PHDEE03"].max_submissions_per_user == 2
        assert FORM_DEFINITIONS["PHDEE3"].max_submissions_per_user is None


class TestSeeding:
    def test_seed_creates_every_form(self):
        count = db.session.execute(select(func.count(FormType.id))).scalar_one()
        assert count == len(FORM_DEFINITIONS)

    def test_seed_is_idempotent(self):
        assert seed_form_types() == 0
        db.session.commit()
        count = db.session.execute(select(func.count(FormType.id))).scalar_one()
        assert count == len(FORM_DEFINITIONS)

    def test_seeded_channels_and_prerequisites(self):
        ft = db.session.execute(select(FormType).where(FormType.code == "PHDEE2-B")).scalar_one()
        assert ft.required_channels == frozenset({"gec", "admin"})
        assert ft.prerequisite_codes == ["PHDEE2-A"]
        assert ft.stage == "synopsis_defense"

    def test_reseed_keeps_operator_deactivation(self):
        ft = db.session.execute(select(FormType).where(FormType.code == "PHDEE3")).scalar_one()
        ft.is_active = False
        db.session.commit()
        seed_form_types()
        db.session.commit()
        assert db.session.get(FormType, ft.id).is_active is False
