from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from data_delivery.core.exceptions import is_transient


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    classify: Callable[[BaseException], bool] = field(default=is_transient, compare=False)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delays must be >= 0")

    def should_retry(self, exc: BaseException, retries_so_far: int) -> bool:
        return retries_so_far < self.max_retries and self.classify(exc)

    def delay_for(self, retries_so_far: int) -> float:
        return min(self.base_delay_seconds * (2**retries_so_far), self.max_delay_seconds)
