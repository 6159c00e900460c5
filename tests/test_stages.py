import pytest

from devworkspace_load.stages import (
    DEFAULT_STAGE_PROFILE,
    RampStage,
    build_stages,
    executor_stages,
    target_at,
    total_duration,
)


def test_default_profile_for_25_minutes_and_50_vus():
    stages = build_stages(25, 50)
    assert len(stages) == 6
    assert [s.target for s in stages] == [12, 25, 37, 50, 25, 0]
    assert abs(total_duration(stages) - 25) <= 1


def test_stage_durations_are_rounded_per_stage():
    stages = build_stages(25, 50)
    assert [s.duration for s in stages] == [6, 6, 5, 4, 3, 1]


def test_executor_shape():
    assert executor_stages(build_stages(10, 4)) == [
        {"duration": "3m", "target": 1},
        {"duration": "3m", "target": 2},
        {"duration": "2m", "target": 3},
        {"duration": "2m", "target": 4},
        {"duration": "1m", "target": 2},
        {"duration": "1m", "target": 0},
    ]


def test_last_stage_always_drains_to_zero():
    for max_vus in (0, 1, 7, 100):
        assert build_stages(25, max_vus)[-1].target == 0


def test_targets_never_exceed_max():
    stages = build_stages(60, 9)
    assert max(s.target for s in stages) == 9
    assert all(0 <= s.target <= 9 for s in stages)


def test_custom_profile():
    stages = build_stages(10, 10, profile=((0.5, 1.0), (0.5, 0.0)))
    assert stages == [RampStage(5, 10), RampStage(5, 0)]


@pytest.mark.parametrize("profile", [
    (),
    ((0.5, 1.0), (0.4, 0.0)),
    ((0.5, 1.0), (0.5, 0.5)),
    ((0.5, 1.5), (0.5, 0.0)),
])
def test_invalid_profiles_are_rejected(profile):
    with pytest.raises(ValueError):
        build_stages(10, 10, profile=profile)


def test_default_profile_is_unchanged():
    assert [f for f, _ in DEFAULT_STAGE_PROFILE] == [0.25, 0.25, 0.20, 0.15, 0.10, 0.05]


def test_target_at_interpolates_linearly():
    stages = [RampStage(2, 10), RampStage(2, 10), RampStage(1, 0)]
    assert target_at(stages, 0) == 0
    assert target_at(stages, 1) == 5
    assert target_at(stages, 2) == 10
    assert target_at(stages, 3) == 10
    assert target_at(stages, 4.5) == 5
    assert target_at(stages, 10) == 0


@pytest.mark.parametrize("max_vus", [1, 3, 7, 33, 50, 1000])
def test_full_load_stage_reaches_max_vus(max_vus):
    assert build_stages(25, max_vus)[3].target == max_vus
