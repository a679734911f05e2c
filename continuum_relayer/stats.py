class StatisticsAggregator:
    """Running order counters. Written by the engine only; never reset."""

    def __init__(self) -> None:
        self._total_orders = 0
        self._successful_orders = 0
        self._failed_orders = 0
        self._total_execution_time_ms = 0.0

    def record_accepted(self) -> None:
        self._total_orders += 1

    def record_success(self, execution_time_ms: float) -> None:
        self._successful_orders += 1
        self._total_execution_time_ms += execution_time_ms

    def record_failure(self) -> None:
        self._failed_orders += 1

    @property
    def total_orders(self) -> int:
        return self._total_orders

    @property
    def successful_orders(self) -> int:
        return self._successful_orders

    @property
    def failed_orders(self) -> int:
        return self._failed_orders

    @property
    def total_execution_time_ms(self) -> float:
        return self._total_execution_time_ms

    def success_rate(self) -> float:
        if self._total_orders == 0:
            return 1.0
        return self._successful_orders / self._total_orders

    def avg_execution_time_ms(self) -> float:
        if self._successful_orders == 0:
            return 0.0
        return self._total_execution_time_ms / self._successful_orders
