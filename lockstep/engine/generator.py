"""
lockstep — Sequence Generator Adapter

Wraps a domain generator behind one interface:

    generate(seed, config) -> GeneratedRun

The generator decides which operations to produce; the adapter only checks
that what came back is a run the engine can execute. Business rules are the
executors' job.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable

import structlog

from lockstep.engine.errors import GeneratorError
from lockstep.engine.types import GeneratedRun

if TYPE_CHECKING:
    from lockstep.config import GeneratorConfig

logger = structlog.get_logger().bind(system="lockstep.generator")

GenerateFn = Callable[[int, "GeneratorConfig"], GeneratedRun]


class SequenceGenerator(ABC):
    """
    Strategy base class for domain generators.

    Implementations MUST be deterministic for a given (seed, config): a
    failing run is reproduced by re-running its seed.
    """

    @abstractmethod
    def generate(self, seed: int, config: GeneratorConfig) -> GeneratedRun:
        ...


class GeneratorAdapter:
    """Uniform front for a SequenceGenerator or a bare generate function."""

    def __init__(self, generator: SequenceGenerator | GenerateFn) -> None:
        if isinstance(generator, SequenceGenerator):
            self._generate: GenerateFn = generator.generate
        else:
            self._generate = generator

    def generate(self, seed: int, config: GeneratorConfig) -> GeneratedRun:
        try:
            run = self._generate(seed, config)
        except GeneratorError:
            raise
        except Exception as exc:
            raise GeneratorError(f"generator failed for seed {seed}: {exc}") from exc

        if not isinstance(run, GeneratedRun):
            raise GeneratorError(
                f"generator returned {type(run).__name__}, expected GeneratedRun"
            )
        if len(run.operations) > config.max_length:
            raise GeneratorError(
                f"generator produced {len(run.operations)} operations, "
                f"max_length is {config.max_length}"
            )
        missing = [
            h for h in run.environment.tracked if h not in run.initial_state.entities
        ]
        if missing:
            raise GeneratorError(f"tracked entities absent from initial state: {missing}")

        logger.debug(
            "sequence_generated",
            seed=seed,
            operations=len(run.operations),
            start_level=run.environment.start_level,
        )
        return run
