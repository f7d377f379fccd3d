import pytest

from calcgen.errors import MalformedPlanError, PlanValidationError
from calcgen.models.plan import Buff, DamageDetail, HealDetail, ReactionDetail
from calcgen.services.plan_validator import _as_int, normalize_kind, normalize_main_attr, normalize_params, validate


def test_valid_plan(gs_request, valid_raw_plan):
    plan = validate(gs_request, valid_raw_plan)

    assert [d.title for d in plan.details] == ["Skill DMG", "Burst DMG"]
    assert all(isinstance(d, DamageDetail) for d in plan.details)
    assert plan.details[1].routing_key == "q"
    assert plan.def_dmg_key == "e"
    assert plan.buffs == [Buff(title="Burst: ATK +20%", check="params.q", data={"atkPct": 20.0})]


@pytest.mark.parametrize("raw", [None, [], "plan", 42])
def test_non_object_is_malformed(gs_request, raw):
    with pytest.raises(MalformedPlanError):
        validate(gs_request, raw)


def test_missing_main_attr_is_malformed(gs_request, valid_raw_plan):
    del valid_raw_plan["main_attr"]
    with pytest.raises(MalformedPlanError):
        validate(gs_request, valid_raw_plan)


def test_details_must_be_a_list(gs_request, valid_raw_plan):
    valid_raw_plan["details"] = {"title": "Skill DMG"}
    with pytest.raises(MalformedPlanError):
        validate(gs_request, valid_raw_plan)


def test_no_surviving_rows_is_fatal(gs_request):
    raw = {
        "main_attr": "atk",
        "details": [
            {"title": "Ghost", "talent": "e", "table": "Nope"},
            {"title": "", "talent": "e", "table": "Skill DMG"},
            "not a row",
        ],
    }
    with pytest.raises(PlanValidationError):
        validate(gs_request, raw)


def test_object_literal_element_argument_is_fatal(gs_request):
    raw = {
        "main_attr": "atk",
        "details": [
            {
                "title": "Skill DMG",
                "talent": "e",
                "table": "Skill DMG",
                "dmg_expr": 'dmg(talent.e["Skill DMG"], "e", {"ele": "pyro"})',
            }
        ],
    }
    with pytest.raises(PlanValidationError) as exc:
        validate(gs_request, raw)
    assert "argument 3 must not be an object literal" in str(exc.value)
    assert "Skill DMG" in str(exc.value)


def test_invalid_guard_is_dropped_not_fatal(gs_request):
    raw = {
        "main_attr": "atk",
        "details": [{"title": "Skill DMG", "talent": "e", "table": "Skill DMG", "check": "import os"}],
    }
    plan = validate(gs_request, raw)
    assert plan.details[0].check is None


def test_custom_expression_moves_row_to_referenced_table(gs_request):
    raw = {
        "main_attr": "atk",
        "details": [
            {
                "title": "Skill DMG",
                "talent": "e",
                "table": "Wrong Name",
                "dmgExpr": 'dmg(talent.e["Skill DMG"] * 2, "e")',
            }
        ],
    }
    row = validate(gs_request, raw).details[0]
    assert (row.talent, row.table) == ("e", "Skill DMG")


def test_structured_variant_is_preferred(gs_request):
    raw = {"main_attr": "hp", "details": [{"title": "Healing", "kind": "healing", "talent": "q", "table": "Healing"}]}
    row = validate(gs_request, raw).details[0]
    assert isinstance(row, HealDetail)
    assert row.table == "Healing2"


def test_reaction_rows(gs_request, valid_raw_plan):
    valid_raw_plan["details"] += [
        {"title": "Swirl", "kind": "reaction", "reaction": "Swirl"},
        {"title": "Vaporize", "kind": "reaction", "reaction": "vaporize"},
        {"title": "Overload", "kind": "reaction", "reaction": "超载"},
    ]
    plan = validate(gs_request, valid_raw_plan)
    reactions = [d.reaction for d in plan.details if isinstance(d, ReactionDetail)]
    assert reactions == ["swirl", "overloaded"]


def test_row_normalisation(gs_request):
    raw = {
        "main_attr": "atk, cpct bogus cpct",
        "def_dmg_key": "missing",
        "details": [
            {
                "title": "Plunge DMG",
                "talent": "a",
                "table": "Plunge DMG",
                "key": "a3, nightsoul",
                "ele": "Vaporize",
                "stat": "EM",
                "pick": 7,
                "cons": 9,
                "params": {"stacks": 3, "bad name": 1, "nested": {"x": 1}, "on": True},
            },
            {"title": "Skill DMG", "talent": "e", "table": "Skill DMG", "ele": "pyro", "key": "not a key!"},
        ],
    }
    plan = validate(gs_request, raw)
    plunge, skill = plan.details

    assert plan.main_attr == "atk,cpct"
    assert plan.def_dmg_key is None
    assert plunge.key == "a3,nightsoul"
    assert plunge.ele == "vaporize"
    assert plunge.stat == "mastery"
    assert plunge.pick is None
    assert plunge.cons is None
    assert plunge.params == {"stacks": 3, "on": True}
    assert skill.ele is None
    assert skill.key is None
    assert skill.routing_key == "e"


def test_buff_validation(gs_request, valid_raw_plan):
    valid_raw_plan["buffs"] = [
        {"title": "Mixed", "data": {"atkPct": "20", "bogusKey": 5, "cpct": 'talent.e["Skill DMG Bonus"]'}},
        {"title": "Nothing usable", "data": {"bogusKey": 5}},
        {"title": "Bad value", "data": {"dmg": "open('x')"}},
        {"title": "Guarded", "check": 'current_talent == "e"', "cons": 2, "tree": 0, "data": {"ePlus": 100}},
        "Vaporize",
        "Unknown Reaction",
        {"title": "Mixed", "data": {"atkPct": "20", "cpct": 'talent.e["Skill DMG Bonus"]'}},
    ]
    plan = validate(gs_request, valid_raw_plan)

    assert plan.buffs == [
        Buff(title="Mixed", data={"atkPct": 20.0, "cpct": 'talent.e["Skill DMG Bonus"]'}),
        Buff(title="Guarded", check='current_talent == "e"', cons=2, data={"ePlus": 100.0}),
        "vaporize",
    ]


def test_string_buffs_are_gs_only(sr_request):
    raw = {
        "main_attr": "atk",
        "details": [{"title": "Basic ATK", "talent": "a", "table": "Basic ATK DMG"}],
        "buffs": ["vaporize"],
    }
    assert validate(sr_request, raw).buffs == []


def test_helpers():
    assert normalize_kind("Shielding") == "shield"
    assert normalize_kind("whatever") == "dmg"
    assert normalize_kind(None) == "dmg"
    assert normalize_params([1, 2]) == {}
    assert normalize_main_attr("sr", "nothing known") == "atk,cpct,cdmg,speed"
    with pytest.raises(MalformedPlanError):
        normalize_main_attr("gs", "   ")
    assert normalize_main_attr("gs", "atk, DEF") == "atk,defense"


@pytest.mark.parametrize(
    "value,expected",
    [("3", 3), (" -2 ", -2), (2.0, 2), (4, 4), ("--1", None), ("²", None), ("1e3", None), ("", None), (True, None), (2.5, None)],
)
def test_as_int_only_accepts_plain_integers(value, expected):
    assert _as_int(value) == expected


def test_def_attribute_alias_is_rewritten(gs_request):
    raw = {
        "main_attr": "atk,def",
        "details": [
            {
                "title": "Skill DMG",
                "talent": "e",
                "table": "Skill DMG",
                "dmg_expr": 'dmg.basic(calc(attr.def) * to_ratio(talent.e["Skill DMG"]), "e")',
            }
        ],
        "buffs": [{"title": "Guard", "check": "calc(attr.defence) > 0", "data": {"atkPlus": "calc(attr.def) * 0.1"}}],
    }
    plan = validate(gs_request, raw)

    assert plan.main_attr == "atk,defense"
    assert plan.details[0].dmg_expr == 'dmg.basic(calc(attr.defense) * to_ratio(talent.e["Skill DMG"]), "e")'
    assert plan.buffs == [Buff(title="Guard", check="calc(attr.defense) > 0", data={"atkPlus": "calc(attr.defense) * 0.1"})]
