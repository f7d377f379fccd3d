import pytest

from calcgen.errors import RuntimeCheckError
from calcgen.models.plan import Buff, DamageDetail, HealDetail, Plan, ReactionDetail
from calcgen.services.renderer import render
from calcgen.services.runtime_checker import buff_value_issue, check_rendered, detail_value, parse_module
from calcgen.services.sample_context import DamageResult

SKILL_FORMULA = 'dmg(talent.e["Skill Damage"], "e")'
DETAIL_LAMBDA = "lambda talent, attr, calc, params, cons, weapon, trees, dmg, heal, shield, reaction:"


def _check(request, *details, buffs=None):
    plan = Plan(details=list(details), buffs=buffs or [], main_attr="atk,cpct,cdmg")
    return check_rendered(request, render(request, plan))


def test_rendered_module_passes_both_magnitudes(gs_request):
    report = _check(
        gs_request,
        DamageDetail(title="Skill DMG", talent="e", table="Skill DMG", params={"stacks": 2}, check="params.q"),
        DamageDetail(title="Plunge", talent="a", table="Plunge DMG", key="a3", pick=1),
        HealDetail(title="Healing", talent="q", table="Healing2"),
        ReactionDetail(title="Swirl", reaction="swirl"),
        buffs=[
            Buff(title="Burst ATK", check="params.q", data={"atkPct": 20.0, "ePlus": 'talent.e["Skill DMG Bonus"] * 10'}),
            Buff(title="Only on skill", check='current_talent == "e"', data={"dmg": "15 if params.stacks > 1 else 0"}),
            "vaporize",
        ],
    )
    assert report.magnitudes == ["large", "small"]
    assert report.detail_count == 4
    assert report.buff_count == 3
    # tables read as 100 against 2000 atk, then as 1 against 100 atk
    assert report.detail_values["large"][0] == pytest.approx(2000.0)
    assert report.detail_values["small"][0] == pytest.approx(1.0)
    assert report.detail_values["large"][3] == pytest.approx(1000.0)


def test_sr_module_passes(sr_request):
    report = _check(
        sr_request,
        DamageDetail(title="Ult", talent="q", table="Ultimate DMG"),
        buffs=[Buff(title="Ult boost", data={"qDmg": 'talent.q["DMG Increase"] * 100'})],
    )
    assert report.detail_values["large"] == [pytest.approx(20000.0)]


def test_syntax_rejects_statements(skill_request):
    with pytest.raises(RuntimeCheckError) as exc:
        parse_module("import os\n")
    assert exc.value.phase == "syntax"
    assert "only simple `name = value` statements" in exc.value.issues[0]

    with pytest.raises(RuntimeCheckError) as exc:
        check_rendered(skill_request, "details = [\n")
    assert exc.value.phase == "syntax"


@pytest.mark.parametrize(
    "replacement,issue",
    [
        ("talent.e.__class__", "attribute '__class__' is not allowed"),
        ('open("x")', "call to 'open' is not allowed"),
        ("[x for x in talent]", "ListComp is not allowed"),
        ('dmg(talent.e["Skill Damage"], key="e")', "keyword arguments are not allowed"),
        ("secret", "unknown name 'secret'"),
    ],
)
def test_syntax_rejects_unsafe_formulas(skill_request, skill_plan, replacement, issue):
    source = render(skill_request, skill_plan).replace(SKILL_FORMULA, replacement)
    with pytest.raises(RuntimeCheckError) as exc:
        check_rendered(skill_request, source)
    assert exc.value.phase == "syntax"
    assert any(issue in i for i in exc.value.issues)


def test_syntax_checks_bindings(skill_request, skill_plan):
    source = render(skill_request, skill_plan)

    with pytest.raises(RuntimeCheckError) as exc:
        parse_module(source.replace('created_by = "calcgen"\n', ""))
    assert "missing bindings: created_by" in exc.value.issues

    with pytest.raises(RuntimeCheckError) as exc:
        parse_module(source + "extra = 1\n")
    assert any("unexpected binding 'extra'" in i for i in exc.value.issues)

    with pytest.raises(RuntimeCheckError) as exc:
        parse_module(source.replace("def_dmg_idx = 0", "def_dmg_idx = 4"))
    assert "def_dmg_idx 4 is out of range" in exc.value.issues

    with pytest.raises(RuntimeCheckError) as exc:
        parse_module(source.replace(DETAIL_LAMBDA, "lambda talent, dmg:"))
    assert any("lambda parameters must be" in i for i in exc.value.issues)


def test_unknown_element_tag_fails_semantic_phase(gs_request):
    with pytest.raises(RuntimeCheckError) as exc:
        _check(gs_request, DamageDetail(title="Skill DMG", talent="e", table="Skill DMG", ele="pyro"))
    assert exc.value.phase == "semantic"
    assert exc.value.magnitude == "large"
    assert "unknown element tag 'pyro'" in str(exc.value)


@pytest.mark.parametrize(
    "dmg_expr,issue",
    [
        ('dmg.basic(calc(attr.hp) * talent.e["Skill DMG"] * 10, "e")', "exceeds 20,000,000"),
        ('dmg.basic(calc(attr.atk) / (cons - 6) + talent.e["Skill DMG"], "e")', "ZeroDivisionError"),
        ('dmg(talent.e["Missing"], "e")', "KeyError"),
        ("weapon.name", "formula returned str, not a damage result"),
        ('dmg(talent.e["Skill DMG"], "e").avg', None),
    ],
)
def test_detail_results_are_checked(gs_request, dmg_expr, issue):
    row = DamageDetail(title="Custom", talent="e", table="Skill DMG", dmg_expr=dmg_expr)
    if issue is None:
        assert _check(gs_request, row).detail_values["large"] == [pytest.approx(2000.0)]
        return
    with pytest.raises(RuntimeCheckError) as exc:
        _check(gs_request, row)
    assert exc.value.phase == "semantic"
    assert any(issue in i for i in exc.value.issues)


@pytest.mark.parametrize(
    "data,issue",
    [
        ({"atkPct": 900.0}, "900 outside [-80, 500]"),
        ({"cpct": 150.0}, "crit rate 150 > 100"),
        ({"atkPct": "params.q"}, "returned True instead of a number"),
        ({"atkPct": 'talent.e["Skill DMG"] / (cons - 6)'}, "ZeroDivisionError"),
    ],
)
def test_buff_values_are_checked(gs_request, data, issue):
    row = DamageDetail(title="Skill DMG", talent="e", table="Skill DMG")
    with pytest.raises(RuntimeCheckError) as exc:
        _check(gs_request, row, buffs=[Buff(title="Odd", data=data)])
    assert any(issue in i for i in exc.value.issues)


def test_string_buffs_must_be_reaction_ids(gs_request, sr_request):
    with pytest.raises(RuntimeCheckError) as exc:
        _check(gs_request, DamageDetail(title="Skill DMG", talent="e", table="Skill DMG"), buffs=["phy"])
    assert "'phy' is not a reaction id" in str(exc.value)

    with pytest.raises(RuntimeCheckError):
        _check(sr_request, DamageDetail(title="Ult", talent="q", table="Ultimate DMG"), buffs=["vaporize"])


def test_value_helpers():
    assert detail_value(DamageResult(12.5)) == 12.5
    assert detail_value({"dmg": 3, "avg": 2}) == 2
    assert detail_value(7) == 7
    assert buff_value_issue("gs", "atkPct", None) is None
    assert buff_value_issue("gs", "_placeholder", 99999) is None
    assert buff_value_issue("gs", "atkPlus", 5000) is None
    assert buff_value_issue("sr", "kx", 150) == "150 > 100"
    assert buff_value_issue("sr", "qDmg", 1200) is None
    assert buff_value_issue("gs", "qDmg", 1200) == "1200 outside [-80, 500]"


@pytest.mark.parametrize(
    "value,magnitude",
    [
        # a percent left as a whole number explodes once tables read large
        ('talent.e["Skill DMG Bonus"] * 100', "large"),
        # a wrongly subtracted baseline collapses once tables read small
        ('talent.e["Skill DMG Bonus"] - 100', "small"),
    ],
)
def test_magnitudes_catch_opposite_unit_mistakes(gs_request, value, magnitude):
    row = DamageDetail(title="Skill DMG", talent="e", table="Skill DMG")
    with pytest.raises(RuntimeCheckError) as exc:
        _check(gs_request, row, buffs=[Buff(title="Bonus", data={"eDmg": value})])
    assert exc.value.phase == "semantic"
    assert exc.value.magnitude == magnitude


def test_clamped_rebase_survives_both_magnitudes(gs_request):
    row = DamageDetail(title="Skill DMG", talent="e", table="Skill DMG")
    report = _check(gs_request, row, buffs=[Buff(title="Total", data={"aMulti": 'max(talent.e["CD"] - 100, 0)'})])
    assert report.magnitudes == ["large", "small"]


def test_buff_data_is_only_read_while_check_holds(gs_request):
    row = DamageDetail(title="Skill DMG", talent="e", table="Skill DMG")
    data = {"atkPct": 'talent.e["Skill DMG"] * 100'}

    report = _check(gs_request, row, buffs=[Buff(title="After trigger", check="params.triggered", data=data)])
    assert report.buff_count == 1

    with pytest.raises(RuntimeCheckError) as exc:
        _check(gs_request, row, buffs=[Buff(title="Always", data=data)])
    assert any("outside [-80, 500]" in i for i in exc.value.issues)
