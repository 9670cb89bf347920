"""
Shared fixtures: a small on-disk formulary and a plan to check it against.
"""

import json

import pytest

from coveredrx.schemas import InsurancePlan
from coveredrx.services.formulary import FormularyIndex
from fakes import TEST_PLAN


@pytest.fixture
def formulary_dir(tmp_path):
    (tmp_path / "aetna-choice-pos.json").write_text(json.dumps(TEST_PLAN), encoding="utf-8")
    return tmp_path


@pytest.fixture
def formulary(formulary_dir):
    return FormularyIndex.from_directory(str(formulary_dir))


@pytest.fixture
def aetna_plan():
    return InsurancePlan(id="aetna-choice-pos", name="Aetna Choice POS II", carrier="Aetna", type="POS")
