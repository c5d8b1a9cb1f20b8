"""Usage metering and monthly budget tracking."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Protocol, Sequence, Set, Tuple
from uuid import uuid4

from localrag.config import Settings
from localrag.metrics.observability import PipelineMetrics, get_logger
from localrag.models import EntityKind, OperationKind, UsageRecord, utcnow
from localrag.storage import LocalStore

DAYS_PER_PROJECTION = 30


@dataclass(frozen=True)
class PricingTable:
    """Unit price per operation kind: per token for embedding and generation, per byte for storage."""

    unit_prices: Mapping[OperationKind, float]

    def __post_init__(self) -> None:
        for kind, price in self.unit_prices.items():
            if price < 0:
                raise ValueError(f"Unit price for {kind.value} must be non-negative")
        object.__setattr__(self, "unit_prices", MappingProxyType(dict(self.unit_prices)))

    def cost(self, kind: OperationKind, quantity: int) -> float:
        return self.unit_prices.get(kind, 0.0) * quantity

    @classmethod
    def from_settings(cls, settings: Settings) -> "PricingTable":
        return cls(
            {
                OperationKind.GENERATION: settings.price_per_generation_token,
                OperationKind.EMBEDDING: settings.price_per_embedding_token,
                OperationKind.STORAGE: settings.price_per_storage_byte,
            }
        )


@dataclass
class BudgetConfig:
    monthly_limit: float = 100.0
    alert_thresholds: Tuple[float, ...] = (60.0, 80.0, 100.0)

    def __post_init__(self) -> None:
        if self.monthly_limit < 0:
            raise ValueError("monthly_limit must be non-negative")
        self.alert_thresholds = tuple(sorted(self.alert_thresholds))


@dataclass(frozen=True)
class BudgetAlert:
    threshold: float
    utilization: float
    current_spend: float
    monthly_limit: float
    period: str
    message: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class BudgetStatus:
    within_budget: bool
    current_spend: float
    monthly_limit: float
    utilization: float
    projected_monthly_cost: float
    alerts: Tuple[BudgetAlert, ...] = ()


class UsageRecorder(Protocol):
    """Anything that can meter a billable operation."""

    def record_usage(self, kind: OperationKind, quantity: int, *, model_id: str | None = None) -> object:
        """Meter ``quantity`` units of ``kind``."""


class UsageSink(UsageRecorder, Protocol):
    """A recorder that can also price usage for the caller to persist.

    ``price`` builds a record without writing it, so callers can store usage
    in the same batch as the work it pays for and then report it through
    ``committed``.
    """

    def record_usage(self, kind: OperationKind, quantity: int, *, model_id: str | None = None) -> UsageRecord:
        """Persist and return the priced usage record."""

    def price(self, kind: OperationKind, quantity: int, *, model_id: str | None = None) -> UsageRecord:
        """Return the priced usage record without persisting it."""

    def committed(self, records: Sequence[UsageRecord]) -> None:
        """Observe records the caller has persisted itself."""


class CostLedger:
    """Per-project usage ledger persisted through the local store.

    Billing periods are calendar months in UTC. Each configured threshold
    raises at most one alert per period.
    """

    def __init__(
        self,
        store: LocalStore,
        project_id: str,
        *,
        pricing: PricingTable,
        budget: BudgetConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        metrics: PipelineMetrics | None = None,
    ) -> None:
        self._store = store
        self._project_id = project_id
        self._pricing = pricing
        self._budget = budget or BudgetConfig()
        self._clock = clock
        self._metrics = metrics
        self._fired: Dict[str, Set[float]] = {}
        self._logger = get_logger("costs")

    @property
    def pricing(self) -> PricingTable:
        return self._pricing

    @property
    def budget(self) -> BudgetConfig:
        return self._budget

    def replace_pricing(self, pricing: PricingTable) -> None:
        """Price future operations with ``pricing``; past records keep their cost."""

        self._pricing = pricing

    def update_budget(self, monthly_limit: float) -> BudgetConfig:
        self._budget = BudgetConfig(monthly_limit=monthly_limit, alert_thresholds=self._budget.alert_thresholds)
        self._logger.info("budget.updated", project_id=self._project_id, monthly_limit=monthly_limit)
        return self._budget

    def record_usage(self, kind: OperationKind, quantity: int, *, model_id: str | None = None) -> UsageRecord:
        record = self.price(kind, quantity, model_id=model_id)
        self._store.put(record)
        self.committed([record])
        return record

    def price(self, kind: OperationKind, quantity: int, *, model_id: str | None = None) -> UsageRecord:
        if quantity < 0:
            raise ValueError("quantity must be non-negative")
        return UsageRecord(
            record_id=uuid4().hex,
            project_id=self._project_id,
            kind=kind,
            quantity=quantity,
            cost=self._pricing.cost(kind, quantity),
            created_at=self._clock(),
            model_id=model_id,
        )

    def committed(self, records: Sequence[UsageRecord]) -> None:
        if not records:
            return
        if self._metrics is not None:
            self._metrics.observe_spend(self._project_id, self.current_spend(), self.utilization_percentage())
        for record in records:
            self._logger.info(
                "usage.recorded",
                project_id=self._project_id,
                kind=record.kind.value,
                quantity=record.quantity,
                cost=record.cost,
            )

    def records(self) -> List[UsageRecord]:
        return self._store.query(self._project_id, EntityKind.USAGE_RECORD)

    def period_records(self) -> List[UsageRecord]:
        start = self._period_start()
        return [record for record in self.records() if record.created_at >= start]

    def current_spend(self) -> float:
        return sum(record.cost for record in self.period_records())

    def breakdown(self) -> Dict[OperationKind, float]:
        totals = {kind: 0.0 for kind in OperationKind}
        for record in self.period_records():
            totals[record.kind] += record.cost
        return totals

    def projected_monthly_cost(self) -> float:
        """Linear extrapolation of this period's spend to a 30-day window."""

        elapsed_days = (self._clock() - self._period_start()).total_seconds() / 86400
        return self.current_spend() / max(elapsed_days, 1.0) * DAYS_PER_PROJECTION

    def utilization_percentage(self) -> float:
        # Uncapped: values above 100 signal overspend.
        if self._budget.monthly_limit <= 0:
            return 0.0
        return self.current_spend() / self._budget.monthly_limit * 100

    def check_budget(self) -> BudgetStatus:
        spend = self.current_spend()
        utilization = self.utilization_percentage()
        period = self._period_key()
        fired = self._fired.setdefault(period, set())
        alerts: List[BudgetAlert] = []
        for threshold in self._budget.alert_thresholds:
            if threshold in fired or utilization < threshold:
                continue
            fired.add(threshold)
            alerts.append(
                BudgetAlert(
                    threshold=threshold,
                    utilization=utilization,
                    current_spend=spend,
                    monthly_limit=self._budget.monthly_limit,
                    period=period,
                    message=(
                        f"Spend ${spend:.2f} reached {threshold:g}% of the "
                        f"${self._budget.monthly_limit:.2f} monthly budget"
                    ),
                    created_at=self._clock(),
                )
            )
            self._logger.warning(
                "budget.threshold_crossed",
                project_id=self._project_id,
                threshold=threshold,
                utilization=utilization,
            )
        return BudgetStatus(
            within_budget=spend <= self._budget.monthly_limit,
            current_spend=spend,
            monthly_limit=self._budget.monthly_limit,
            utilization=utilization,
            projected_monthly_cost=self.projected_monthly_cost(),
            alerts=tuple(alerts),
        )

    def reset_metrics(self) -> int:
        """Drop every usage record of the project and re-arm all alerts."""

        removed = self._store.reset_usage(self._project_id)
        self._fired.clear()
        return removed

    def _period_start(self) -> datetime:
        now = self._clock()
        return datetime(now.year, now.month, 1, tzinfo=now.tzinfo or timezone.utc)

    def _period_key(self) -> str:
        now = self._clock()
        return f"{now.year:04d}-{now.month:02d}"
