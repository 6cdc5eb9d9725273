"""Stage job bodies for seqbatch.

Each stage describes one job type: how jobs are discovered, which commands
run them, what counts as finished output and how the job degrades.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

from typing import Any, Dict, Type

from seqbatch.stage import Stage
from seqbatch_stages.acquire import AcquireStage
from seqbatch_stages.quant import QuantStage
from seqbatch_stages.trim import TrimStage

STAGES: Dict[str, Type[Stage]] = {
    AcquireStage.name: AcquireStage,
    TrimStage.name: TrimStage,
    QuantStage.name: QuantStage,
}


class UnknownStageError(KeyError):
    """Raised when a stage name is not registered."""

    pass


def get_stage(name: str, **options: Any) -> Stage:
    """Build a stage by name.

    Options with a None value are dropped so stage defaults apply.
    """
    try:
        stage_cls = STAGES[name]
    except KeyError:
        raise UnknownStageError(f"Unknown stage: {name} (available: {', '.join(STAGES)})")
    return stage_cls(**{k: v for k, v in options.items() if v is not None})


__all__ = ["AcquireStage", "QuantStage", "STAGES", "Stage", "TrimStage", "UnknownStageError", "get_stage"]
