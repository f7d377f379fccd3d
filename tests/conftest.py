import pytest

from calcgen.models.plan import DamageDetail, Plan
from calcgen.models.request import CalcRequest


@pytest.fixture
def gs_request():
    return CalcRequest(
        game="gs",
        id=10000001,
        name="Tester",
        elem="pyro",
        weapon="sword",
        star=5,
        tables={
            "a": ["1-Hit DMG", "Charged Attack DMG", "Plunge DMG"],
            "e": ["Skill DMG", "Skill DMG Bonus", "CD"],
            "q": ["Burst DMG", "Healing", "Healing2", "Flat Heal", "Energy Cost"],
        },
        table_samples={
            "a": {"1-Hit DMG": 80.0, "Charged Attack DMG": [60.0, 2.0], "Plunge DMG": [130.0, 160.0]},
            "e": {"Skill DMG": 150.0, "Skill DMG Bonus": 20.0, "CD": 10.0},
            "q": {
                "Burst DMG": 400.0,
                "Healing": 8.0,
                "Healing2": [8.0, 900.0],
                "Flat Heal": 1200.0,
                "Energy Cost": 60.0,
            },
        },
        table_text_samples={
            "a": {"Charged Attack DMG": "60%*2", "Plunge DMG": "130%/160%"},
            "q": {"Healing": "8% Max HP+900", "Healing2": "8% Max HP+900"},
        },
        talent_desc={"e": "Deals Pyro DMG to nearby opponents."},
        buff_hints=["After using the Elemental Burst, ATK is increased by 20% for 10s."],
    )


@pytest.fixture
def sr_request():
    return CalcRequest(
        game="sr",
        id=1001,
        name="Ranger",
        elem="fire",
        weapon="Abundance",
        star=5,
        tables={
            "a": ["Basic ATK DMG"],
            "e": ["Healing Percent", "Healing Flat"],
            "q": ["Ultimate DMG", "DMG Increase"],
            "t": ["Counter DMG"],
        },
        table_samples={
            "a": {"Basic ATK DMG": 1.0},
            "e": {"Healing Percent": 0.1, "Healing Flat": 200.0},
            "q": {"Ultimate DMG": 3.0, "DMG Increase": 0.2},
            "t": {"Counter DMG": 1.5},
        },
        talent_desc={"e": "Restores HP equal to a percentage of this unit's Max HP plus a flat amount."},
    )


@pytest.fixture
def skill_request():
    return CalcRequest(
        game="gs",
        name="Tester",
        tables={"e": ["Skill Damage"]},
        table_samples={"e": {"Skill Damage": 150.0}},
    )


@pytest.fixture
def skill_plan():
    return Plan(
        details=[DamageDetail(title="Skill DMG", talent="e", table="Skill Damage")],
        main_attr="atk,cpct,cdmg",
    )


@pytest.fixture
def valid_raw_plan():
    return {
        "main_attr": "atk,cpct,cdmg",
        "def_dmg_key": "e",
        "details": [
            {"title": "Skill DMG", "talent": "e", "table": "Skill DMG", "key": "e"},
            {"title": "Burst DMG", "talent": "q", "table": "Burst DMG"},
        ],
        "buffs": [{"title": "Burst: ATK +20%", "check": "params.q", "data": {"atkPct": 20}}],
    }
