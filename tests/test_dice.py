"""Tests for trpg_session.dice: parsing, rolling and mandated-roll validation."""

import logging
import random

import pytest

from trpg_session.dice import (
    FALLBACK,
    GAME_SYSTEMS,
    DiceNotation,
    DiceNotationError,
    batch_roll,
    describe_roll,
    format_notation,
    meets_target,
    parse_notation,
    parse_notation_strict,
    roll,
    roll_d20,
    roll_specification,
    validate_against_requirement,
)
from trpg_session.models import DiceRollResult, DiceSpecification


class FixedRng:
    """Returns queued values from randint, in order."""

    def __init__(self, *values: int) -> None:
        self._values = list(values)

    def randint(self, low: int, high: int) -> int:
        value = self._values.pop(0)
        assert low <= value <= high
        return value


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

class TestParseNotation:
    def test_count_sides_and_modifier(self) -> None:
        assert parse_notation("2d6+3") == DiceNotation(count=2, sides=6, modifier=3)

    def test_count_defaults_to_one(self) -> None:
        assert parse_notation("d20") == DiceNotation(count=1, sides=20, modifier=0)

    def test_negative_modifier(self) -> None:
        assert parse_notation("3d8-2") == DiceNotation(count=3, sides=8, modifier=-2)

    def test_case_and_whitespace_tolerated(self) -> None:
        assert parse_notation(" 1D12 ") == DiceNotation(count=1, sides=12, modifier=0)

    def test_garbage_falls_back_to_d20(self) -> None:
        assert parse_notation("garbage") == FALLBACK == DiceNotation(1, 20, 0)

    def test_fallback_logs_warning(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="trpg_session.dice"):
            parse_notation("roll a d20 please")
        assert "falling back" in caplog.text

    def test_zero_dice_falls_back(self) -> None:
        assert parse_notation("0d6") == FALLBACK

    def test_advantage_suffix(self) -> None:
        assert parse_notation("1d20adv") == DiceNotation(1, 20, 0, "advantage")
        assert parse_notation("d20+2DIS") == DiceNotation(1, 20, 2, "disadvantage")

    @pytest.mark.parametrize("notation", ["999999999d6", "101d6", "1d1001", "2d20adv"])
    def test_out_of_range_falls_back(self, notation: str) -> None:
        assert parse_notation(notation) == FALLBACK


class TestParseNotationStrict:
    def test_valid_notation(self) -> None:
        assert parse_notation_strict("2d6+3") == DiceNotation(2, 6, 3)

    def test_garbage_raises(self) -> None:
        with pytest.raises(DiceNotationError, match="Invalid dice notation"):
            parse_notation_strict("garbage")

    def test_zero_sides_raises(self) -> None:
        with pytest.raises(DiceNotationError):
            parse_notation_strict("1d0")

    def test_error_is_a_value_error(self) -> None:
        with pytest.raises(ValueError):
            parse_notation_strict("")

    @pytest.mark.parametrize("notation,message", [
        ("101d6", "more than 100 dice"),
        ("1d5000", "more than 1000 sides"),
        ("3d20adv", "more than one die"),
    ])
    def test_limits_raise(self, notation: str, message: str) -> None:
        with pytest.raises(DiceNotationError, match=message):
            parse_notation_strict(notation)

    def test_upper_limits_are_inclusive(self) -> None:
        assert parse_notation_strict("100d1000") == DiceNotation(100, 1000, 0)

    def test_system_rules_checked(self) -> None:
        assert parse_notation_strict("8d6", "shadowrun") == DiceNotation(8, 6, 0)
        with pytest.raises(DiceNotationError, match="d6 pools only"):
            parse_notation_strict("1d20", "shadowrun")
        with pytest.raises(DiceNotationError, match="no advantage"):
            parse_notation_strict("1d20adv", "pathfinder")

    def test_unknown_system(self) -> None:
        with pytest.raises(ValueError, match="Unknown game system"):
            parse_notation_strict("1d20", "monopoly")


def test_format_notation():
    assert format_notation(1, 20) == "1d20"
    assert format_notation(1, 20, 3) == "1d20+3"
    assert format_notation(2, 6, -1) == "2d6-1"
    assert format_notation(1, 20, 2, "advantage") == "1d20+2adv"


# ---------------------------------------------------------------------------
# Rolling
# ---------------------------------------------------------------------------

class TestRoll:
    @pytest.mark.parametrize("notation,count,sides,modifier", [
        ("1d20", 1, 20, 0),
        ("2d6+3", 2, 6, 3),
        ("4d4-1", 4, 4, -1),
        ("3d100", 3, 100, 0),
    ])
    def test_roll_shape(self, notation, count, sides, modifier) -> None:
        rng = random.Random(1234)
        for _ in range(50):
            result = roll(notation, rng=rng)
            assert len(result.rolls) == count
            assert all(1 <= r <= sides for r in result.rolls)
            assert result.total == sum(result.rolls) + modifier
            assert result.notation == notation

    def test_extra_modifier_added_to_notation_modifier(self) -> None:
        result = roll("1d20+1", modifier=2, rng=FixedRng(10))
        assert result.modifier == 3
        assert result.total == 13

    def test_critical_and_fumble_flags_on_d20(self) -> None:
        assert roll("1d20", rng=FixedRng(20)).critical
        assert roll("1d20", rng=FixedRng(1)).fumble
        plain = roll("1d20", rng=FixedRng(11))
        assert not plain.critical and not plain.fumble

    def test_no_critical_flags_on_other_dice(self) -> None:
        result = roll("1d6", rng=FixedRng(1))
        assert not result.fumble

    def test_purpose_appends_log_line(self) -> None:
        lines: list[str] = []
        roll("2d6+1", "Damage", rng=FixedRng(3, 4), log=lines.append)
        assert lines == ["Damage: 2d6+1 = [3, 4] + 1 = 8"]

    def test_no_log_without_purpose(self) -> None:
        lines: list[str] = []
        roll("1d20", rng=FixedRng(5), log=lines.append)
        assert lines == []

    def test_result_is_immutable(self) -> None:
        result = roll("1d20", rng=FixedRng(5))
        with pytest.raises(Exception):
            result.total = 99


class TestRollD20:
    def test_advantage_keeps_higher(self) -> None:
        result = roll_d20("advantage", modifier=2, rng=FixedRng(4, 17))
        assert result.rolls == [17, 4]
        assert result.total == 19
        assert result.notation == "1d20adv"

    def test_disadvantage_keeps_lower(self) -> None:
        result = roll_d20("disadvantage", rng=FixedRng(4, 17))
        assert result.rolls == [4, 17]
        assert result.total == 4

    def test_natural_twenty_with_advantage_is_critical(self) -> None:
        assert roll_d20("advantage", rng=FixedRng(20, 3)).critical

    def test_normal_is_a_plain_d20(self) -> None:
        result = roll_d20(rng=FixedRng(8))
        assert result.notation == "1d20"
        assert result.rolls == [8]

    def test_notation_parses_back_to_the_same_roll(self) -> None:
        result = roll_d20("advantage", rng=FixedRng(18, 12))
        assert parse_notation(result.notation) == DiceNotation(1, 20, 0, "advantage")
        replay = roll(result.notation, rng=FixedRng(18, 12))
        assert replay.rolls == result.rolls == [18, 12]
        assert replay.total == result.total == 18

    def test_roll_with_disadvantage_suffix(self) -> None:
        result = roll("1d20+3dis", rng=FixedRng(14, 6))
        assert result.rolls == [6, 14]
        assert result.total == 9


def test_describe_roll_negative_modifier():
    result = DiceRollResult(notation="1d20-2", rolls=[9], total=7, modifier=-2)
    assert describe_roll(result) == "1d20-2 = [9] - 2 = 7"


# ---------------------------------------------------------------------------
# Mandated-roll validation
# ---------------------------------------------------------------------------

class TestValidateAgainstRequirement:
    @pytest.fixture
    def spec(self) -> DiceSpecification:
        return DiceSpecification(notation="1d20", modifier=2, reason="Perception", difficulty=15)

    def test_exact_notation_is_success(self, spec) -> None:
        result = roll("1d20", rng=FixedRng(3))
        assert validate_against_requirement(result, spec) == "success"

    def test_other_dice_mismatch_even_with_same_total(self, spec) -> None:
        result = DiceRollResult(notation="2d6", rolls=[1, 2], total=3)
        assert validate_against_requirement(result, spec) == "mismatch"

    def test_notation_compared_literally(self, spec) -> None:
        result = DiceRollResult(notation="d20", rolls=[3], total=3)
        assert validate_against_requirement(result, spec) == "mismatch"

    def test_roll_specification_applies_modifier(self, spec) -> None:
        result = roll_specification(spec, rng=FixedRng(12))
        assert result.total == 14
        assert result.purpose == "Perception"
        assert validate_against_requirement(result, spec) == "success"


def test_meets_target():
    result = DiceRollResult(notation="1d20", rolls=[15], total=15)
    assert meets_target(result, 15) is True
    assert meets_target(result, 16) is False
    assert meets_target(result, None) is None


def test_percentile_systems_roll_under():
    result = DiceRollResult(notation="1d100", rolls=[42], total=42, game_system="cthulhu")
    assert meets_target(result, 50) is True
    assert meets_target(result, 41) is False


# ---------------------------------------------------------------------------
# Game systems
# ---------------------------------------------------------------------------

class TestGameSystems:
    def test_every_system_has_a_legal_default(self) -> None:
        for system_id, rules in GAME_SYSTEMS.items():
            assert rules.id == system_id
            parse_notation_strict(rules.default_notation, system_id)

    def test_cthulhu_critical_and_fumble(self) -> None:
        assert roll("1d100", rng=FixedRng(1), system="cthulhu").critical
        assert roll("1d100", rng=FixedRng(100), system="cthulhu").fumble
        assert not roll("1d100", rng=FixedRng(3), system="cthulhu").critical

    def test_stormbringer_wider_ranges(self) -> None:
        assert roll("1d100", rng=FixedRng(5), system="stormbringer").critical
        assert roll("1d100", rng=FixedRng(96), system="stormbringer").fumble

    def test_percentile_ignores_modifier(self) -> None:
        result = roll("1d100+10", rng=FixedRng(40), system="cthulhu")
        assert result.total == 40
        assert result.modifier == 0

    def test_shadowrun_counts_successes_and_explodes(self) -> None:
        # 6 explodes into a 2; the other dice show 5, 1, 3
        result = roll("4d6", rng=FixedRng(6, 2, 5, 1, 3), system="shadowrun")
        assert result.rolls == [6, 2, 5, 1, 3]
        assert result.total == 2
        assert result.success is True
        assert result.critical and result.fumble
        assert describe_roll(result) == "4d6 = [6, 2, 5, 1, 3] = 2 successes"

    def test_shadowrun_no_successes(self) -> None:
        result = roll("2d6", rng=FixedRng(1, 2), system="shadowrun")
        assert result.total == 0
        assert result.success is False

    def test_explosions_are_bounded(self) -> None:
        rng = FixedRng(*([6] * 101 + [1]))
        result = roll("1d6", rng=rng, system="shadowrun")
        assert len(result.rolls) == 101

    def test_advantage_ignored_where_unsupported(self, caplog: pytest.LogCaptureFixture) -> None:
        result = roll("1d20adv", rng=FixedRng(7), system="pathfinder")
        assert result.rolls == [7]
        assert "no advantage" in caplog.text

    def test_sum_systems_have_no_success_flag(self) -> None:
        assert roll("1d20", rng=FixedRng(12)).success is None


class TestBatchRoll:
    def test_rolls_each_notation(self) -> None:
        results = batch_roll(["1d20+2", "2d6"], rng=FixedRng(10, 3, 4))
        assert [r.total for r in results] == [12, 7]

    def test_invalid_notation_rolls_nothing(self) -> None:
        rng = FixedRng(10)
        with pytest.raises(DiceNotationError):
            batch_roll(["1d20", "fireball"], rng=rng)
        assert rng._values == [10]

    def test_system_rules_apply(self) -> None:
        with pytest.raises(DiceNotationError):
            batch_roll(["6d6", "1d100"], system="shadowrun")
