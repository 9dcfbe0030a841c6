"""Fill events, fees and a simulated execution client."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar

from tradeloop.data import MarketMeta


class ExecutionError(Exception):
    """Raised when a fill cannot be built or generated."""

    def __init__(self, attribute: str) -> None:
        super().__init__(
            f"Failed to build struct due to missing attributes: {attribute}"
        )
        self.attribute = attribute


@dataclass(frozen=True)
class Fees:
    """Every fee incurred by a fill."""

    exchange: float = 0.0
    slippage: float = 0.0
    network: float = 0.0

    def calculate_total_fees(self) -> float:
        """Sum of all fee amounts."""
        return self.exchange + self.network + self.slippage


@dataclass
class FillEvent:
    """Journal of an order executed by an execution client."""

    EVENT_TYPE: ClassVar[str] = "Fill"

    time: datetime
    exchange: Any
    instrument: Any
    market_meta: MarketMeta
    decision: Any
    quantity: float
    fill_value_gross: float
    fees: Fees

    @staticmethod
    def builder() -> FillEventBuilder:
        """A fresh builder for fill events."""
        return FillEventBuilder()


_FILL_FIELDS = (
    "time",
    "exchange",
    "instrument",
    "market_meta",
    "decision",
    "quantity",
    "fill_value_gross",
    "fees",
)


class FillEventBuilder:
    """Collects the parts of a fill event and builds it once all are set."""

    def __init__(self) -> None:
        self._values: dict[str, Any] = {}

    def _set(self, name: str, value: Any) -> FillEventBuilder:
        self._values[name] = value
        return self

    def time(self, value: datetime) -> FillEventBuilder:
        return self._set("time", value)

    def exchange(self, value: Any) -> FillEventBuilder:
        return self._set("exchange", value)

    def instrument(self, value: Any) -> FillEventBuilder:
        return self._set("instrument", value)

    def market_meta(self, value: MarketMeta) -> FillEventBuilder:
        return self._set("market_meta", value)

    def decision(self, value: Any) -> FillEventBuilder:
        return self._set("decision", value)

    def quantity(self, value: float) -> FillEventBuilder:
        return self._set("quantity", value)

    def fill_value_gross(self, value: float) -> FillEventBuilder:
        return self._set("fill_value_gross", value)

    def fees(self, value: Fees) -> FillEventBuilder:
        return self._set("fees", value)

    def build(self) -> FillEvent:
        """Build the fill event, raising ExecutionError for the first missing part."""
        for name in _FILL_FIELDS:
            if name not in self._values:
                raise ExecutionError(name)
        return FillEvent(**self._values)


@dataclass(frozen=True)
class SimulatedExecutionConfig:
    """Fee percentages, in decimal form, applied by a simulated execution."""

    simulated_fees_pct: Fees = field(default_factory=Fees)


class SimulatedExecution:
    """Execution client that fills every order at the market close price."""

    def __init__(self, config: SimulatedExecutionConfig | None = None) -> None:
        if config is None:
            config = SimulatedExecutionConfig()
        self.fees_pct = config.simulated_fees_pct

    def generate_fill(self, order: Any) -> FillEvent:
        """Fill the order at its market close price with simulated fees."""
        fill_value_gross = self.calculate_fill_value_gross(order)
        return FillEvent(
            time=datetime.now(timezone.utc),
            exchange=order.exchange,
            instrument=order.instrument,
            market_meta=copy.copy(order.market_meta),
            decision=order.decision,
            quantity=order.quantity,
            fill_value_gross=fill_value_gross,
            fees=self.calculate_fees(fill_value_gross),
        )

    @staticmethod
    def calculate_fill_value_gross(order: Any) -> float:
        """Absolute order quantity times the close price, excluding fees."""
        return abs(order.quantity) * order.market_meta.close

    def calculate_fees(self, fill_value_gross: float) -> Fees:
        """Fees a fill of the given gross value incurs."""
        return Fees(
            exchange=self.fees_pct.exchange * fill_value_gross,
            slippage=self.fees_pct.slippage * fill_value_gross,
            network=self.fees_pct.network * fill_value_gross,
        )