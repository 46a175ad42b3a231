"""Value generators for periodic channels.

A generator is any callable ``(tick, now) -> value`` where ``tick`` is the
zero-based tick index of the channel and ``now`` the wall-clock time of the
tick. It may return the value directly or an awaitable resolving to it, so an
external feed can be polled without blocking the event loop.
"""

from __future__ import annotations

import math
import random
from typing import Awaitable, Callable, Optional, Sequence, Union

from ...shared.schemas import (
    ExternalGeneratorConfig,
    RandomGeneratorConfig,
    ReplayGeneratorConfig,
    SineGeneratorConfig,
)
from .errors import GeneratorExhausted

GeneratorResult = Union[float, Awaitable[float]]
Generator = Callable[[int, float], GeneratorResult]


def random_generator(low: float = 0.0, high: float = 100.0, seed: Optional[int] = None) -> Generator:
    rng = random.Random(seed)

    def _next(tick: int, now: float) -> float:
        return rng.uniform(low, high)

    return _next


def sine_generator(amplitude: float = 1.0, period_s: float = 10.0, offset: float = 0.0) -> Generator:
    def _next(tick: int, now: float) -> float:
        return offset + amplitude * math.sin(2.0 * math.pi * now / period_s)

    return _next


def replay_generator(values: Sequence[float], loop: bool = True) -> Generator:
    frozen = tuple(values)
    if not frozen:
        raise ValueError("replay generator needs at least one value")

    def _next(tick: int, now: float) -> float:
        if tick >= len(frozen) and not loop:
            raise GeneratorExhausted(f"replay exhausted after {len(frozen)} values")
        return frozen[tick % len(frozen)]

    return _next


def build_generator(
    config: Union[RandomGeneratorConfig, SineGeneratorConfig, ReplayGeneratorConfig, ExternalGeneratorConfig],
) -> Optional[Generator]:
    """Return the generator for ``config``; ``None`` for externally fed channels."""
    if isinstance(config, RandomGeneratorConfig):
        return random_generator(config.low, config.high, config.seed)
    if isinstance(config, SineGeneratorConfig):
        return sine_generator(config.amplitude, config.period_s, config.offset)
    if isinstance(config, ReplayGeneratorConfig):
        return replay_generator(config.values, config.loop)
    if isinstance(config, ExternalGeneratorConfig):
        return None
    raise ValueError(f"Unsupported generator config: {config!r}")
