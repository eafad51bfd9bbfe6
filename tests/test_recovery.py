import pytest

from pocket_runtime.recovery import RestartPolicy


def test_backoff_schedule_and_ceiling():
    policy = RestartPolicy()
    delays = []
    attempt = 0
    while True:
        decision = policy.decide(attempt=attempt, auto_restart=True, exit_code=1)
        if not decision.restart:
            break
        delays.append(decision.delay_seconds)
        attempt = decision.attempt

    assert delays == [1.0, 2.0, 5.0, 5.0, 5.0]
    assert attempt == 5
    assert "gave up after 5 restart attempts" in (decision.reason or "")


def test_no_restart_without_auto_restart():
    decision = RestartPolicy().decide(attempt=0, auto_restart=False, exit_code=9)

    assert decision.restart is False
    assert decision.reason == "Pocket TTS server exited unexpectedly (code 9)."


def test_delay_clamps_to_last_entry():
    policy = RestartPolicy([0.5, 1.5])
    assert policy.delay_for(0) == 0.5
    assert policy.delay_for(7) == 1.5


def test_empty_schedule_is_rejected():
    with pytest.raises(ValueError):
        RestartPolicy([])
