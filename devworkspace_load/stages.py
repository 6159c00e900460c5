"""
Ramp-up / plateau / ramp-down concurrency profile.

The default profile climbs to 25%, 50%, 75% and 100% of the max VUs, backs
off to 50% and finally drains to 0 so no VU is still running when final
cleanup starts.
"""
import math
from dataclasses import dataclass
from typing import List, Sequence, Tuple

# (fraction of total duration, fraction of max VUs)
DEFAULT_STAGE_PROFILE: Tuple[Tuple[float, float], ...] = (
    (0.25, 0.25),
    (0.25, 0.5),
    (0.20, 0.75),
    (0.15, 1.0),
    (0.10, 0.5),
    (0.05, 0.0),
)


@dataclass(frozen=True)
class RampStage:
    duration: int  # minutes
    target: int

    def as_executor_stage(self) -> dict:
        return {"duration": f"{self.duration}m", "target": self.target}


def validate_profile(profile: Sequence[Tuple[float, float]]):
    if not profile:
        raise ValueError("Stage profile must contain at least one stage")
    total = sum(fraction for fraction, _ in profile)
    if not math.isclose(total, 1.0, abs_tol=1e-9):
        raise ValueError(f"Stage duration fractions must sum to 1.0, got {total}")
    for fraction, ratio in profile:
        if fraction < 0:
            raise ValueError(f"Stage duration fraction must be non-negative, got {fraction}")
        if not 0.0 <= ratio <= 1.0:
            raise ValueError(f"Stage target ratio must be within [0, 1], got {ratio}")
    if profile[-1][1] != 0:
        raise ValueError("The last stage must ramp down to 0 VUs")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def build_stages(total_duration_minutes, max_vus: int,
                 profile: Sequence[Tuple[float, float]] = DEFAULT_STAGE_PROFILE) -> List[RampStage]:
    """Split the run into stages.

    Durations are rounded per stage; the rounding error is not redistributed,
    so the sum may differ slightly from ``total_duration_minutes``.
    """
    validate_profile(profile)
    max_vus = max(0, int(max_vus))
    return [
        RampStage(
            duration=_round_half_up(float(total_duration_minutes) * fraction),
            target=int(math.floor(max_vus * ratio)),
        )
        for fraction, ratio in profile
    ]


def executor_stages(stages: Sequence[RampStage]) -> List[dict]:
    return [stage.as_executor_stage() for stage in stages]


def total_duration(stages: Sequence[RampStage]) -> int:
    return sum(stage.duration for stage in stages)


def target_at(stages: Sequence[RampStage], elapsed_minutes: float, start_target: int = 0) -> int:
    """Target VU count at a point in the run, interpolated linearly within each stage."""
    previous = start_target
    stage_start = 0.0
    for stage in stages:
        stage_end = stage_start + stage.duration
        if elapsed_minutes < stage_end:
            if stage.duration <= 0:
                return stage.target
            progress = (elapsed_minutes - stage_start) / stage.duration
            return int(round(previous + (stage.target - previous) * progress))
        previous = stage.target
        stage_start = stage_end
    return previous
