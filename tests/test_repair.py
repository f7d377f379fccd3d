import pytest

from calcgen.models.request import CalcRequest
from calcgen.repair.arrays import infer_pick_from_title
from calcgen.repair.engine import repair, repair_with_context
from calcgen.repair.guards import weaken_guard
from calcgen.repair.multiplier_tables import multiplier_target
from calcgen.services.plan_validator import validate


def _plan(request, details, buffs=None, **extra):
    return validate(request, {"main_attr": "atk,cpct,cdmg", "details": details, "buffs": buffs or [], **extra})


@pytest.fixture
def infusion_request():
    return CalcRequest(
        game="gs",
        name="Infuser",
        tables={"a": ["1-Hit DMG"], "e": ["Skill DMG", "Infusion Multiplier"], "q": ["Burst DMG"]},
        table_units={"e": {"Infusion Multiplier": "% Normal Attack DMG"}},
        table_samples={
            "a": {"1-Hit DMG": 80.0},
            "e": {"Skill DMG": 150.0, "Infusion Multiplier": 150.0},
            "q": {"Burst DMG": 400.0},
        },
    )


def test_total_percent_multiplier_is_rebased(gs_request):
    plan = _plan(
        gs_request,
        [{"title": "Burst DMG", "talent": "q", "table": "Burst DMG"}],
        [{"title": "Burst boost", "data": {"qMulti": 137.9, "aMulti": 20}}],
    )
    buff = repair(gs_request, plan).buffs[0]
    assert buff.data["qMulti"] == pytest.approx(37.9)
    assert buff.data["aMulti"] == 20.0
    assert buff.rebased_keys == ["qMulti"]


def test_multiplier_table_is_folded_into_a_state_buff(infusion_request):
    plan = _plan(
        infusion_request,
        [
            {"title": "Skill DMG", "talent": "e", "table": "Skill DMG"},
            {"title": "Infused Attack", "talent": "e", "table": "Infusion Multiplier"},
            {"title": "1-Hit DMG", "talent": "a", "table": "1-Hit DMG"},
        ],
    )
    repaired = repair(infusion_request, plan)

    assert [d.title for d in repaired.details] == ["Skill DMG", "1-Hit DMG", "1-Hit DMG (Skill state)"]
    assert repaired.details[2].params == {"e": True}
    buff = repaired.buffs[0]
    assert buff.title == "Infusion Multiplier: Skill state"
    assert buff.check == "params.e"
    assert buff.data == {"aMulti": 'max(talent.e["Infusion Multiplier"] - 100, 0)'}


def test_dead_params_are_removed_from_guards(gs_request):
    plan = _plan(
        gs_request,
        [
            {"title": "Skill DMG", "talent": "e", "table": "Skill DMG", "params": {"q": True}},
            {"title": "Burst DMG", "talent": "q", "table": "Burst DMG", "check": "params.zzz"},
        ],
        [
            {"title": "Conjunction", "check": "params.zzz and cons >= 2", "data": {"atkPct": 10}},
            {"title": "Disjunction", "check": "params.zzz or params.q", "data": {"atkPct": 5}},
            {"title": "Live", "check": "params.q", "data": {"atkPct": 1}},
        ],
    )
    repaired = repair(gs_request, plan)

    assert repaired.details[1].check is None
    assert [b.check for b in repaired.buffs] == ["cons >= 2", None, "params.q"]


def test_weaken_guard():
    assert weaken_guard("(params.a and cons > 1 and params.b)", {"a"}) == "cons > 1 and params.b"
    assert weaken_guard("params.a or params.b", {"a"}) is None
    assert weaken_guard("params.a", {"a"}) is None


def test_double_counted_plus_is_dropped(gs_request):
    plan = _plan(
        gs_request,
        [{"title": "Skill DMG", "talent": "e", "table": "Skill DMG"}],
        [
            {"title": "Echo", "data": {"ePlus": 'talent.e["Skill DMG"] * calc(attr.atk) / 100', "atkPct": 20}},
            {"title": "Only echo", "data": {"ePlus": 'talent.e["Skill DMG"] * calc(attr.atk) / 100'}},
            {"title": "Other table", "data": {"ePlus": 'talent.e["Skill DMG Bonus"] * calc(attr.atk) / 100'}},
        ],
    )
    repaired = repair(gs_request, plan)
    assert [(b.title, list(b.data)) for b in repaired.buffs] == [("Echo", ["atkPct"]), ("Other table", ["ePlus"])]


def test_resist_reductions_are_positive(gs_request):
    plan = _plan(
        gs_request,
        [{"title": "Skill DMG", "talent": "e", "table": "Skill DMG"}],
        [{"title": "Shred", "data": {"kx": -20, "enemyDef": '-talent.e["Skill DMG Bonus"]', "atkPct": -5}}],
    )
    data = repair(gs_request, plan).buffs[0].data
    assert data == {"kx": 20.0, "enemyDef": 'talent.e["Skill DMG Bonus"]', "atkPct": -5.0}


def test_sr_percent_scaling_is_dropped(sr_request):
    plan = _plan(
        sr_request,
        [{"title": "Ultimate", "talent": "q", "table": "Ultimate DMG", "dmg_expr": 'dmg(talent.q["Ultimate DMG"] * 100, "q")'}],
    )
    assert repair(sr_request, plan).details[0].dmg_expr == 'dmg(talent.q["Ultimate DMG"], "q")'


def test_gs_percent_scaling_is_left_alone(gs_request):
    expr = 'dmg.basic(calc(attr.atk) * talent.e["Skill DMG"] / 100, "e")'
    plan = _plan(gs_request, [{"title": "Skill", "talent": "e", "table": "Skill DMG", "dmg_expr": expr}])
    assert repair(gs_request, plan).details[0].dmg_expr == expr


def test_manual_crit_factor_is_removed(gs_request):
    expr = 'dmg(talent.e["Skill DMG"], "e").avg * (1 + calc(attr.cpct) / 100 * calc(attr.cdmg) / 100)'
    plan = _plan(gs_request, [{"title": "Skill", "talent": "e", "table": "Skill DMG", "dmg_expr": expr}])
    assert repair(gs_request, plan).details[0].dmg_expr == 'dmg(talent.e["Skill DMG"], "e").avg'


def test_hit_count_multiplies(gs_request):
    expr = (
        'dmg.basic(calc(attr.atk) * to_ratio(talent.a["Charged Attack DMG"][0])'
        ' + talent.a["Charged Attack DMG"][1], "a2")'
    )
    plan = _plan(gs_request, [{"title": "Charged", "talent": "a", "table": "Charged Attack DMG", "dmg_expr": expr}])
    assert repair(gs_request, plan).details[0].dmg_expr == (
        'dmg.basic(calc(attr.atk) * to_ratio(talent.a["Charged Attack DMG"][0])'
        ' * talent.a["Charged Attack DMG"][1], "a2")'
    )


def test_variant_arrays(gs_request):
    plan = _plan(
        gs_request,
        [
            {"title": "Low Plunge DMG", "talent": "a", "table": "Plunge DMG"},
            {"title": "Plunge DMG", "talent": "a", "table": "Plunge DMG", "key": "a3"},
            {"title": "Charged Attack DMG", "talent": "a", "table": "Charged Attack DMG", "key": "a2"},
        ],
    )
    repaired = repair(gs_request, plan)
    rows = [(d.title, d.pick) for d in repaired.details]
    assert rows == [
        ("Low Plunge DMG", 0),
        ("Plunge DMG (1)", 0),
        ("Plunge DMG (2)", 1),
        ("Charged Attack DMG", None),
    ]


def test_variant_arrays_are_not_expanded_for_sr():
    request = CalcRequest(
        game="sr",
        name="Ranger",
        tables={"e": ["Skill DMG"]},
        table_samples={"e": {"Skill DMG": [1.0, 1.5]}},
    )
    plan = _plan(request, [{"title": "Skill DMG", "talent": "e", "table": "Skill DMG"}])
    assert [d.title for d in repair(request, plan).details] == ["Skill DMG"]


def test_duplicate_titles_get_suffixes(gs_request):
    plan = _plan(
        gs_request,
        [
            {"title": "Hit", "talent": "e", "table": "Skill DMG"},
            {"title": "Hit", "talent": "q", "table": "Burst DMG"},
            {"title": "Hit", "talent": "a", "table": "1-Hit DMG"},
        ],
    )
    assert [d.title for d in repair(gs_request, plan).details] == ["Hit", "Hit (2)", "Hit (3)"]


def test_repair_is_idempotent(gs_request, infusion_request):
    plan = _plan(
        gs_request,
        [
            {"title": "Plunge DMG", "talent": "a", "table": "Plunge DMG"},
            {"title": "Skill", "talent": "e", "table": "Skill DMG", "check": "params.zzz and cons >= 1"},
            {"title": "Skill", "talent": "e", "table": "Skill DMG"},
        ],
        [{"title": "Burst boost", "data": {"qMulti": 137.9, "kx": -10}}],
    )
    once = repair(gs_request, plan)
    assert repair(gs_request, once) == once

    folded = _plan(
        infusion_request,
        [
            {"title": "Infused Attack", "talent": "e", "table": "Infusion Multiplier"},
            {"title": "1-Hit DMG", "talent": "a", "table": "1-Hit DMG"},
        ],
    )
    once = repair(infusion_request, folded)
    assert repair(infusion_request, once) == once


def test_notes_are_recorded(gs_request):
    plan = _plan(
        gs_request,
        [{"title": "Burst DMG", "talent": "q", "table": "Burst DMG"}],
        [{"title": "Burst boost", "data": {"qMulti": 150}}],
    )
    _, ctx = repair_with_context(gs_request, plan)
    assert any(note.startswith("multi_delta:") for note in ctx.notes)


@pytest.mark.parametrize(
    "title,length,expected",
    [
        ("Hold DMG", 2, 1),
        ("Tap DMG", 2, 0),
        ("High Plunge DMG", 2, 1),
        ("3-Hit DMG", 3, None),
        ("Hit 3 DMG", 3, 2),
        ("二段伤害", 3, 1),
        ("Max Stacks DMG", 3, 2),
        ("2 Stacks DMG", 3, 2),
        ("Plunge DMG", 1, None),
    ],
)
def test_infer_pick_from_title(title, length, expected):
    assert infer_pick_from_title(title, length) == expected


def test_multiplier_target():
    assert multiplier_target("% Normal Attack DMG") == "a"
    assert multiplier_target("% Elemental Burst DMG") == "q"
    assert multiplier_target("% Max HP") is None
    assert multiplier_target("") is None
