"""Tests for the position sizing and risk engine."""

import json

import pytest

from dca_engine import (
    CalculationResult,
    InvalidPercentageScheduleError,
    InvalidPositionCountError,
    InvalidStopLossError,
    MissingOrInvalidFieldError,
    NonPositiveRiskDistanceError,
    PositionType,
    RiskMode,
    ValidationError,
    calculate_leverage,
    cleared_form,
    compute,
    parse_buy_percentages,
    parse_trade_inputs,
)


def _params(
    available="1000",
    first="100",
    last="",
    stop="90",
    positions=1,
    buys=3,
    risk=5,
    percentages="40,30,30",
    position_type=PositionType.LONG,
    risk_mode=RiskMode.MANUAL,
):
    return parse_trade_inputs(
        available_amount=available,
        first_buy_price=first,
        last_buy_price=last,
        stop_loss_price=stop,
        number_of_positions=positions,
        total_buys=buys,
        risk_percentage=risk,
        buy_percentages=percentages,
        position_type=position_type,
        risk_mode=risk_mode,
    )


def _ladder_b(**overrides):
    values = dict(available="3000", first="100", last="80", stop="70", positions=1)
    values.update(overrides)
    return _params(**values)


# ---------------------------------------------------------------------------
# Worked scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    def test_single_buy_long(self) -> None:
        result = compute(_params())
        assert result.investment_per_position == pytest.approx(1000.0)
        assert result.risk_amount_per_position == pytest.approx(50.0)
        assert len(result.limit_orders) == 1
        order = result.limit_orders[0]
        assert order.price == 100.0
        assert order.amount_invested == pytest.approx(1000.0)
        assert order.percentage == 100.0
        # (50 / 1000) * (100 / 10)
        assert result.leverage == pytest.approx(0.5)

        summary = result.summary()
        assert summary["leverage"] == "0.50x"
        assert summary["investment_per_position"] == "1000.00"
        assert summary["risk_amount_per_position"] == "50.00"

    def test_three_buy_ladder_long(self) -> None:
        result = compute(_ladder_b())
        assert [o.price for o in result.limit_orders] == [100.0, 90.0, 80.0]
        assert [o.amount_invested for o in result.limit_orders] == pytest.approx([1200.0, 900.0, 900.0])
        assert result.risk_amount_per_position == pytest.approx(150.0)
        # Manual risk sizes leverage off the first buy price, not the average
        assert result.leverage == pytest.approx((150 / 3000) * (100 / 30))
        assert result.summary()["leverage"] == "0.17x"

    def test_schedule_sum_off_by_one(self) -> None:
        with pytest.raises(InvalidPercentageScheduleError, match="must equal 100%") as exc:
            compute(_ladder_b(percentages="40,30,29"))
        assert exc.value.kind == "sum"
        assert exc.value.expected == 100
        assert exc.value.actual == 99


# ---------------------------------------------------------------------------
# Ladder and risk properties
# ---------------------------------------------------------------------------


class TestLadder:
    def test_percentages_sum_to_100(self) -> None:
        result = compute(_ladder_b(percentages="10,20,70"))
        assert sum(o.percentage for o in result.limit_orders) == 100

    def test_constant_price_interval(self) -> None:
        result = compute(_params(first="10", last="11", stop="9", buys=4, percentages="25,25,25,25"))
        prices = [o.price for o in result.limit_orders]
        steps = [b - a for a, b in zip(prices, prices[1:])]
        assert steps == pytest.approx([1 / 3] * 3)
        assert prices[0] == 10.0
        assert prices[-1] == pytest.approx(11.0)

    def test_rising_ladder_for_short(self) -> None:
        result = compute(_params(
            first="100", last="120", stop="130", buys=3,
            position_type=PositionType.SHORT,
        ))
        assert [o.price for o in result.limit_orders] == pytest.approx([100.0, 110.0, 120.0])
        assert result.leverage == pytest.approx((50 / 1000) * (100 / 30))

    def test_blank_last_price_collapses_to_single_buy(self) -> None:
        result = compute(_params(last="", buys=5, percentages="10,10"))
        assert len(result.limit_orders) == 1
        assert result.limit_orders[0].price == 100.0
        assert result.limit_orders[0].percentage == 100.0
        assert result.limit_orders[0].amount_invested == pytest.approx(1000.0)

    def test_total_risk_scales_with_positions(self) -> None:
        result = compute(_params(positions=4))
        assert result.investment_per_position == pytest.approx(250.0)
        assert result.total_risk_amount == result.risk_amount_per_position * 4

    def test_manual_mode_has_no_quantities(self) -> None:
        result = compute(_ladder_b())
        assert all(o.quantity is None for o in result.limit_orders)
        assert result.average_entry_price is None
        assert result.risk_percentage is None

    def test_recompute_is_identical(self) -> None:
        params = _ladder_b(risk_mode=RiskMode.SPLIT, stop="60")
        first, second = compute(params), compute(params)
        assert first == second
        assert first.to_dict() == second.to_dict()


class TestSplitRisk:
    def test_average_entry_and_leverage(self) -> None:
        result = compute(_params(
            first="100", last="80", stop="70", positions=4,
            risk_mode=RiskMode.SPLIT,
        ))
        assert result.investment_per_position == pytest.approx(250.0)
        assert result.risk_percentage == pytest.approx(25.0)
        assert result.risk_amount_per_position == pytest.approx(250.0)
        assert result.total_risk_amount == pytest.approx(1000.0)

        quantities = [100 / 100, 75 / 90, 75 / 80]
        assert [o.quantity for o in result.limit_orders] == pytest.approx(quantities)

        average = 250 / sum(quantities)
        assert result.average_entry_price == pytest.approx(average)
        assert result.leverage == pytest.approx(average / (average - 70))

    def test_short_average_entry(self) -> None:
        result = compute(_params(
            first="100", last="120", stop="130", positions=2, buys=2, percentages="50,50",
            position_type=PositionType.SHORT, risk_mode=RiskMode.SPLIT,
        ))
        average = 500 / (250 / 100 + 250 / 120)
        assert result.average_entry_price == pytest.approx(average)
        assert result.leverage == pytest.approx(average / (130 - average))

    def test_stop_above_average_entry_rejected(self) -> None:
        # 95 is below the first buy but above the blended entry (~90.2)
        with pytest.raises(InvalidStopLossError, match="Average Entry Price"):
            compute(_params(
                first="100", last="80", stop="95", positions=4,
                risk_mode=RiskMode.SPLIT,
            ))

    def test_risk_percentage_field_ignored(self) -> None:
        result = compute(_params(positions=2, risk="", risk_mode=RiskMode.SPLIT))
        assert result.risk_percentage == pytest.approx(50.0)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    @pytest.mark.parametrize("field", ["available", "first", "stop", "positions", "risk"])
    def test_missing_required_field(self, field: str) -> None:
        with pytest.raises(MissingOrInvalidFieldError, match="required fields"):
            compute(_params(**{field: ""}))

    def test_non_numeric_field(self) -> None:
        with pytest.raises(MissingOrInvalidFieldError):
            compute(_params(available="lots"))

    @pytest.mark.parametrize("positions", [0, -2])
    def test_position_count(self, positions: int) -> None:
        with pytest.raises(InvalidPositionCountError, match="at least 1"):
            compute(_params(positions=positions))

    @pytest.mark.parametrize("stop", ["100", "110"])
    def test_long_stop_must_be_below_entry(self, stop: str) -> None:
        with pytest.raises(InvalidStopLossError, match="less than the First Buy Price"):
            compute(_params(stop=stop))

    @pytest.mark.parametrize("stop", ["100", "90"])
    def test_short_stop_must_be_above_entry(self, stop: str) -> None:
        with pytest.raises(InvalidStopLossError, match="greater than the First Buy Price"):
            compute(_params(stop=stop, position_type=PositionType.SHORT))

    def test_count_mismatch(self) -> None:
        with pytest.raises(InvalidPercentageScheduleError, match=r"\(3\) does not match the total buys \(2\)") as exc:
            compute(_ladder_b(buys=2))
        assert exc.value.kind == "count"
        assert (exc.value.expected, exc.value.actual) == (2, 3)

    def test_unparseable_schedule(self) -> None:
        with pytest.raises(InvalidPercentageScheduleError) as exc:
            compute(_ladder_b(percentages="40,thirty,30"))
        assert exc.value.kind == "format"

    def test_negative_percentage(self) -> None:
        with pytest.raises(InvalidPercentageScheduleError, match="negative"):
            compute(_ladder_b(percentages="-10,60,50"))

    def test_sum_has_no_tolerance(self) -> None:
        with pytest.raises(InvalidPercentageScheduleError):
            compute(_ladder_b(percentages="40,30,30.0000001"))

    @pytest.mark.parametrize("risk", [0, -5, 150])
    def test_risk_percentage_range(self, risk: float) -> None:
        with pytest.raises(MissingOrInvalidFieldError, match="Risk Percentage"):
            compute(_params(risk=risk))

    def test_non_positive_prices(self) -> None:
        with pytest.raises(MissingOrInvalidFieldError, match="Last Buy Price"):
            compute(_ladder_b(last="0"))

    def test_missing_total_buys_with_ladder(self) -> None:
        with pytest.raises(MissingOrInvalidFieldError, match="Total Buys"):
            compute(_ladder_b(buys=""))

    def test_errors_are_value_errors(self) -> None:
        assert issubclass(ValidationError, ValueError)
        assert issubclass(NonPositiveRiskDistanceError, ValidationError)


class TestLeverage:
    def test_long(self) -> None:
        assert calculate_leverage(PositionType.LONG, 100.0, 90.0, 50.0, 1000.0) == pytest.approx(0.5)

    def test_short(self) -> None:
        assert calculate_leverage(PositionType.SHORT, 100.0, 125.0, 100.0, 100.0) == pytest.approx(4.0)

    @pytest.mark.parametrize("position_type,stop", [(PositionType.LONG, 100.0), (PositionType.SHORT, 95.0)])
    def test_non_positive_distance(self, position_type: PositionType, stop: float) -> None:
        with pytest.raises(NonPositiveRiskDistanceError):
            calculate_leverage(position_type, 100.0, stop, 50.0, 1000.0)


# ---------------------------------------------------------------------------
# Input parsing and presentation
# ---------------------------------------------------------------------------


class TestParsing:
    def test_numbers_and_strings(self) -> None:
        params = _params(available=" 2500.5 ", first=100, positions="4", buys=3.0)
        assert params.available_amount == 2500.5
        assert params.first_buy_price == 100.0
        assert params.number_of_positions == 4
        assert params.total_buys == 3

    @pytest.mark.parametrize("value", ["", None, "abc", "nan", "inf", True])
    def test_invalid_float_becomes_none(self, value) -> None:
        assert _params(available=value).available_amount is None

    def test_fractional_count_is_invalid(self) -> None:
        assert _params(positions="4.5").number_of_positions is None

    def test_blank_last_price(self) -> None:
        assert _params(last="  ").last_buy_price is None

    def test_buy_percentages(self) -> None:
        assert parse_buy_percentages(" 40, 30 ,30") == (40.0, 30.0, 30.0)
        assert parse_buy_percentages([50, 50]) == (50.0, 50.0)
        assert parse_buy_percentages("40,,60") is None
        assert parse_buy_percentages(None) is None

    def test_enum_values_from_strings(self) -> None:
        params = _params(position_type="short", risk_mode="split")
        assert params.position_type is PositionType.SHORT
        assert params.risk_mode is RiskMode.SPLIT

    def test_cleared_form_keeps_capital(self) -> None:
        form = cleared_form({"available_amount": "5000", "first_buy_price": "12", "total_buys": 7})
        assert form["available_amount"] == "5000"
        assert form["first_buy_price"] == ""
        assert form["total_buys"] == 3
        assert form["buy_percentages"] == "40,30,30"
        assert cleared_form()["available_amount"] == ""


class TestPresentation:
    def test_orders_frame_rounding(self) -> None:
        result = compute(_params(first="10", last="11", stop="9", buys=3, percentages="33,33,34"))
        df = result.orders_frame()
        assert list(df.columns) == ["Price", "Amount to Invest", "Percentage of Investment"]
        assert df["Price"].tolist() == [10.0, 10.5, 11.0]
        assert df["Amount to Invest"].tolist() == [330.0, 330.0, 340.0]

    def test_orders_frame_split_has_quantity(self) -> None:
        result = compute(_params(first="10", last="11", stop="9", buys=4, percentages="25,25,25,25",
                                 risk_mode=RiskMode.SPLIT))
        df = result.orders_frame()
        assert "Quantity" in df.columns
        assert df["Price"].tolist()[1] == 10.3333

    def test_summary_split_fields(self) -> None:
        summary = compute(_params(positions=4, risk_mode=RiskMode.SPLIT)).summary()
        assert summary["risk_percentage"] == "25.00%"
        assert summary["average_entry_price"] == "100.0000"
        assert summary["position_type"] == "Long"

    def test_rounding_does_not_feed_back(self) -> None:
        result = compute(_ladder_b())
        assert result.leverage != round(result.leverage, 2)

    def test_dict_round_trip_through_json(self) -> None:
        result = compute(_ladder_b(risk_mode=RiskMode.SPLIT, stop="60"))
        restored = CalculationResult.from_dict(json.loads(json.dumps(result.to_dict())))
        assert restored == result
