"""Property tests for create/get round-trips and partial updates."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from puzzlemaster.domain.errors import ValidationError
from puzzlemaster.domain.models import is_utf8_text
from puzzlemaster.domain.result import Err, Ok

from . import make_gateways, make_store

if TYPE_CHECKING:
    from pathlib import Path

try:
    from hypothesis import HealthCheck, given, settings
    from hypothesis import strategies as st
except ModuleNotFoundError:
    _HYPOTHESIS_AVAILABLE = False
else:
    _HYPOTHESIS_AVAILABLE = True


if _HYPOTHESIS_AVAILABLE:
    _TEXT = st.text(
        alphabet=st.characters(min_codepoint=32, max_codepoint=0x2FFF, exclude_categories=("Cs",)),
        min_size=1,
        max_size=40,
    ).filter(lambda value: value.strip() != "")
    _OPTIONAL_TEXT = st.none() | st.text(
        alphabet=st.characters(min_codepoint=32, max_codepoint=0x2FFF, exclude_categories=("Cs",)),
        max_size=80,
    )
    _RAW_TEXT = st.text(
        alphabet=st.characters(min_codepoint=32, max_codepoint=0xDFFF),
        max_size=20,
    )
    _SETTINGS = settings(
        max_examples=25,
        derandomize=True,
        deadline=None,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
    )

    @_SETTINGS
    @given(name=_TEXT, description=_OPTIONAL_TEXT)
    def test_property_project_create_get_roundtrip(
        tmp_path: Path,
        name: str,
        description: str | None,
    ) -> None:
        gw = make_gateways(make_store(tmp_path, "roundtrip.db"))

        created = gw.projects.create({"name": name, "description": description})

        assert isinstance(created, Ok)
        assert created.value.name == name
        assert created.value.description == description
        assert gw.projects.get(created.value.id) == created
        gw.projects.delete(created.value.id).unwrap()

    @_SETTINGS
    @given(
        original=_TEXT,
        renamed=_TEXT,
        status=st.sampled_from(["PENDING", "RUNNING", "COMPLETED", "FAILED"]),
    )
    def test_property_partial_update_touches_only_supplied_keys(
        tmp_path: Path,
        original: str,
        renamed: str,
        status: str,
    ) -> None:
        gw = make_gateways(make_store(tmp_path, "partial.db"))
        project = gw.projects.create({"name": "P"}).unwrap()
        plan = gw.plans.create({"project_id": project.id, "description": "d"}).unwrap()
        phase = gw.phases.create({"plan_id": plan.id, "name": "Ph"}).unwrap()
        job = gw.jobs.create({"phase_id": phase.id, "name": "J"}).unwrap()
        task = gw.tasks.create(
            {"job_id": job.id, "name": original, "description": "kept", "status": status}
        ).unwrap()
        before = task.to_dict()

        updated = gw.tasks.update(task.id, {"name": renamed})

        assert isinstance(updated, Ok)
        after = gw.tasks.get(task.id).unwrap().to_dict()
        assert after["name"] == renamed
        assert {key: value for key, value in after.items() if key != "name"} == {
            key: value for key, value in before.items() if key != "name"
        }
        gw.projects.delete(project.id).unwrap()

    @_SETTINGS
    @given(name=_RAW_TEXT)
    def test_property_create_never_raises_on_arbitrary_text(tmp_path: Path, name: str) -> None:
        gw = make_gateways(make_store(tmp_path, "arbitrary.db"))
        encodable = is_utf8_text(name)

        created = gw.projects.create({"name": name})

        if encodable and name.strip():
            assert isinstance(created, Ok)
            gw.projects.delete(created.value.id).unwrap()
        else:
            assert isinstance(created, Err)
            assert isinstance(created.error, ValidationError)
            assert created.error.fields == ("name",)

else:

    def test_property_project_create_get_roundtrip() -> None:
        pytest.skip("hypothesis is not installed")

    def test_property_partial_update_touches_only_supplied_keys() -> None:
        pytest.skip("hypothesis is not installed")

    def test_property_create_never_raises_on_arbitrary_text() -> None:
        pytest.skip("hypothesis is not installed")
