"""Position sizing and risk engine for the DCA calculator.

Turns a set of trade parameters into a ladder of limit orders, the capital
at risk per position and the leverage needed to cap a stop-out at the risk
budget. Everything here is pure: no I/O, no shared state.
"""

import math
from dataclasses import asdict, dataclass
from enum import Enum

import numpy as np
import pandas as pd

# Form defaults
DEFAULT_RISK_PERCENTAGE = 5
DEFAULT_NUMBER_OF_POSITIONS = 4
DEFAULT_TOTAL_BUYS = 3
DEFAULT_BUY_PERCENTAGES = '40,30,30'

FORM_DEFAULTS = {
    'available_amount': '',
    'first_buy_price': '',
    'last_buy_price': '',
    'stop_loss_price': '',
    'risk_percentage': DEFAULT_RISK_PERCENTAGE,
    'number_of_positions': DEFAULT_NUMBER_OF_POSITIONS,
    'total_buys': DEFAULT_TOTAL_BUYS,
    'buy_percentages': DEFAULT_BUY_PERCENTAGES,
}

# Display precision
AMOUNT_DECIMALS = 2
PRICE_DECIMALS = 4


class PositionType(str, Enum):
    LONG = 'long'
    SHORT = 'short'


class RiskMode(str, Enum):
    """Where the per-position risk percentage comes from.

    MANUAL takes it from the form and sizes leverage off the first buy price.
    SPLIT divides 100% evenly across positions and sizes leverage off the
    money-weighted average entry price.
    """
    MANUAL = 'manual'
    SPLIT = 'split'


class ValidationError(ValueError):
    """Base class for user input problems that abort a calculation."""


class MissingOrInvalidFieldError(ValidationError):
    pass


class InvalidPositionCountError(ValidationError):
    pass


class InvalidStopLossError(ValidationError):
    pass


class InvalidPercentageScheduleError(ValidationError):
    """Buy percentages are malformed, miscounted or do not add up to 100."""

    def __init__(self, message, kind, expected=None, actual=None):
        super().__init__(message)
        self.kind = kind
        self.expected = expected
        self.actual = actual


class NonPositiveRiskDistanceError(ValidationError):
    pass


@dataclass(frozen=True)
class TradeParameters:
    available_amount: float = None
    first_buy_price: float = None
    stop_loss_price: float = None
    last_buy_price: float = None
    position_type: PositionType = PositionType.LONG
    risk_mode: RiskMode = RiskMode.MANUAL
    number_of_positions: int = DEFAULT_NUMBER_OF_POSITIONS
    total_buys: int = DEFAULT_TOTAL_BUYS
    risk_percentage: float = DEFAULT_RISK_PERCENTAGE
    buy_percentages: tuple = (40.0, 30.0, 30.0)


@dataclass(frozen=True)
class LimitOrder:
    price: float
    amount_invested: float
    percentage: float
    quantity: float = None


@dataclass(frozen=True)
class CalculationResult:
    limit_orders: tuple
    investment_per_position: float
    risk_amount_per_position: float
    total_risk_amount: float
    leverage: float
    position_type: PositionType
    risk_mode: RiskMode
    stop_loss_price: float
    number_of_positions: int
    average_entry_price: float = None
    risk_percentage: float = None

    def to_dict(self):
        """Plain, JSON-friendly representation"""
        data = asdict(self)
        data['limit_orders'] = [asdict(order) for order in self.limit_orders]
        data['position_type'] = self.position_type.value
        data['risk_mode'] = self.risk_mode.value
        return data

    @classmethod
    def from_dict(cls, data):
        data = dict(data)
        data['limit_orders'] = tuple(LimitOrder(**order) for order in data['limit_orders'])
        data['position_type'] = PositionType(data['position_type'])
        data['risk_mode'] = RiskMode(data['risk_mode'])
        return cls(**data)

    def summary(self):
        """Display strings with fixed precision; the numeric fields stay unrounded."""
        summary = {
            'leverage': f"{self.leverage:.{AMOUNT_DECIMALS}f}x",
            'investment_per_position': f"{self.investment_per_position:.{AMOUNT_DECIMALS}f}",
            'risk_amount_per_position': f"{self.risk_amount_per_position:.{AMOUNT_DECIMALS}f}",
            'total_risk_amount': f"{self.total_risk_amount:.{AMOUNT_DECIMALS}f}",
            'position_type': self.position_type.value.capitalize(),
            'stop_loss_price': f"{self.stop_loss_price:.{PRICE_DECIMALS}f}",
        }
        if self.average_entry_price is not None:
            summary['average_entry_price'] = f"{self.average_entry_price:.{PRICE_DECIMALS}f}"
        if self.risk_percentage is not None:
            summary['risk_percentage'] = f"{self.risk_percentage:.{AMOUNT_DECIMALS}f}%"
        return summary

    def orders_frame(self):
        """Limit orders as a table in ladder order, rounded for display"""
        df = pd.DataFrame({
            'Price': [order.price for order in self.limit_orders],
            'Amount to Invest': [order.amount_invested for order in self.limit_orders],
            'Percentage of Investment': [order.percentage for order in self.limit_orders],
        })
        df['Price'] = df['Price'].round(PRICE_DECIMALS)
        df['Amount to Invest'] = df['Amount to Invest'].round(AMOUNT_DECIMALS)
        if self.risk_mode is RiskMode.SPLIT:
            df['Quantity'] = [order.quantity for order in self.limit_orders]
            df['Quantity'] = df['Quantity'].round(PRICE_DECIMALS)
        return df


# Input parsing

def _parse_float(value):
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _parse_int(value):
    number = _parse_float(value)
    if number is None or not number.is_integer():
        return None
    return int(number)


def parse_buy_percentages(value):
    """Parse '40, 30, 30' (or a sequence of numbers) into a tuple of floats.

    Returns None when any entry is not a number.
    """
    if value is None:
        return None
    parts = value.split(',') if isinstance(value, str) else list(value)
    percentages = []
    for part in parts:
        number = _parse_float(part)
        if number is None:
            return None
        percentages.append(number)
    return tuple(percentages)


def parse_trade_inputs(available_amount, first_buy_price, last_buy_price, stop_loss_price,
                       number_of_positions=DEFAULT_NUMBER_OF_POSITIONS,
                       total_buys=DEFAULT_TOTAL_BUYS,
                       risk_percentage=DEFAULT_RISK_PERCENTAGE,
                       buy_percentages=DEFAULT_BUY_PERCENTAGES,
                       position_type=PositionType.LONG,
                       risk_mode=RiskMode.MANUAL):
    """Build TradeParameters from raw form values.

    Blank or non-numeric fields become None so that compute() can report
    which required field is missing.
    """
    return TradeParameters(
        available_amount=_parse_float(available_amount),
        first_buy_price=_parse_float(first_buy_price),
        last_buy_price=_parse_float(last_buy_price),
        stop_loss_price=_parse_float(stop_loss_price),
        position_type=PositionType(position_type),
        risk_mode=RiskMode(risk_mode),
        number_of_positions=_parse_int(number_of_positions),
        total_buys=_parse_int(total_buys),
        risk_percentage=_parse_float(risk_percentage),
        buy_percentages=parse_buy_percentages(buy_percentages),
    )


def cleared_form(current=None):
    """Form defaults, keeping whatever capital the user already entered"""
    form = dict(FORM_DEFAULTS)
    if current:
        form['available_amount'] = current.get('available_amount', '')
    return form


# Validation

def _require_fields(params, normalized_buys):
    required = {
        'Available Amount': params.available_amount,
        'First Buy Price': params.first_buy_price,
        'Stop Loss Price': params.stop_loss_price,
        'Number of Positions': params.number_of_positions,
    }
    if params.risk_mode is RiskMode.MANUAL:
        required['Risk Percentage'] = params.risk_percentage

    missing = [name for name, value in required.items() if value is None]
    if missing:
        raise MissingOrInvalidFieldError(
            f"Please fill in all required fields with valid numbers ({', '.join(missing)})."
        )

    if params.available_amount <= 0:
        raise MissingOrInvalidFieldError('Available Amount must be greater than 0.')

    prices = {'First Buy Price': params.first_buy_price, 'Stop Loss Price': params.stop_loss_price}
    if params.last_buy_price is not None:
        prices['Last Buy Price'] = params.last_buy_price
    for name, price in prices.items():
        if price <= 0:
            raise MissingOrInvalidFieldError(f"{name} must be greater than 0.")

    if params.risk_mode is RiskMode.MANUAL and not 0 < params.risk_percentage <= 100:
        raise MissingOrInvalidFieldError('Risk Percentage must be greater than 0 and at most 100.')

    if normalized_buys is None or normalized_buys < 1:
        raise MissingOrInvalidFieldError('Total Buys must be a whole number of at least 1.')


def _check_stop_loss(position_type, stop_loss, reference, label):
    if position_type is PositionType.LONG and stop_loss >= reference:
        raise InvalidStopLossError(f"Stop Loss Price must be less than the {label} for a long position.")
    if position_type is PositionType.SHORT and stop_loss <= reference:
        raise InvalidStopLossError(f"Stop Loss Price must be greater than the {label} for a short position.")


def _check_schedule(percentages, buys):
    if percentages is None:
        raise InvalidPercentageScheduleError(
            'Buy percentages must be a comma-separated list of numbers.', kind='format'
        )

    # Strict equality, no tolerance
    total = sum(percentages)
    if total != 100:
        raise InvalidPercentageScheduleError(
            f"The sum of buy percentages must equal 100% (got {total:g}%).",
            kind='sum', expected=100, actual=total,
        )

    if len(percentages) != buys:
        raise InvalidPercentageScheduleError(
            f"The number of buy percentages ({len(percentages)}) does not match the total buys ({buys}).",
            kind='count', expected=buys, actual=len(percentages),
        )

    if any(p < 0 for p in percentages):
        raise InvalidPercentageScheduleError(
            'Buy percentages cannot be negative.', kind='format'
        )


# Calculation

def calculate_leverage(position_type, reference_price, stop_loss_price, risk_amount, investment):
    """Leverage that loses exactly risk_amount if price moves from reference to stop-loss"""
    if position_type is PositionType.LONG:
        price_distance = reference_price - stop_loss_price
    else:
        price_distance = stop_loss_price - reference_price

    if price_distance <= 0:
        raise NonPositiveRiskDistanceError(
            f"Stop Loss Price {stop_loss_price:g} leaves no room to the reference price "
            f"{reference_price:g} for a {position_type.value} position."
        )

    return (risk_amount / investment) * (reference_price / price_distance)


def build_ladder(first_price, last_price, percentages, investment):
    """Evenly spaced limit order prices with the capital split per percentage"""
    buys = len(percentages)
    price_interval = (last_price - first_price) / (buys - 1) if buys > 1 else 0.0

    ladder = pd.DataFrame({'Percentage': np.asarray(percentages, dtype=float)})
    ladder['Price'] = first_price + price_interval * np.arange(buys)
    ladder['Invested'] = investment * ladder['Percentage'] / 100
    ladder['Quantity'] = ladder['Invested'] / ladder['Price']
    return ladder


def compute(params):
    """Compute the limit order ladder, risk and leverage for one position slot.

    Raises a ValidationError subclass when the inputs are inconsistent; no
    partial result is ever returned.
    """
    # A blank last buy price collapses the ladder to one order at the first price
    if params.last_buy_price is None:
        last_price = params.first_buy_price
        buys = 1
        percentages = (100.0,)
    else:
        last_price = params.last_buy_price
        buys = params.total_buys
        percentages = params.buy_percentages

    _require_fields(params, buys)

    positions = params.number_of_positions
    if positions <= 0:
        raise InvalidPositionCountError('Number of Positions must be at least 1.')

    _check_stop_loss(params.position_type, params.stop_loss_price, params.first_buy_price, 'First Buy Price')
    _check_schedule(percentages, buys)

    available = params.available_amount
    investment = available / positions
    if params.risk_mode is RiskMode.SPLIT:
        risk_percent = 100 / positions
    else:
        risk_percent = params.risk_percentage
    risk_amount = (risk_percent / 100) * available

    ladder = build_ladder(params.first_buy_price, last_price, percentages, investment)

    average_entry = None
    if params.risk_mode is RiskMode.SPLIT:
        average_entry = float(investment / ladder['Quantity'].sum())
        _check_stop_loss(params.position_type, params.stop_loss_price, average_entry, 'Average Entry Price')
        reference_price = average_entry
    else:
        reference_price = params.first_buy_price

    leverage = calculate_leverage(
        params.position_type, reference_price, params.stop_loss_price, risk_amount, investment
    )

    keep_quantity = params.risk_mode is RiskMode.SPLIT
    limit_orders = tuple(
        LimitOrder(
            price=float(row.Price),
            amount_invested=float(row.Invested),
            percentage=float(row.Percentage),
            quantity=float(row.Quantity) if keep_quantity else None,
        )
        for row in ladder.itertuples(index=False)
    )

    return CalculationResult(
        limit_orders=limit_orders,
        investment_per_position=investment,
        risk_amount_per_position=risk_amount,
        total_risk_amount=risk_amount * positions,
        leverage=leverage,
        position_type=params.position_type,
        risk_mode=params.risk_mode,
        stop_loss_price=params.stop_loss_price,
        number_of_positions=positions,
        average_entry_price=average_entry,
        risk_percentage=risk_percent if params.risk_mode is RiskMode.SPLIT else None,
    )
