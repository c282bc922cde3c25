import base64
from dataclasses import replace

import pytest

from rtk_ntrip import machine
from rtk_ntrip.machine import MachineSettings, Snapshot, TimerKind, build_request, step
from rtk_ntrip.types import AuthorizationOutcome, ConnectionConfig, ReconnectPolicy, SessionState

ADDRESS = (2, 1, 6, "", ("127.0.0.1", 2101))


@pytest.fixture
def settings():
    return MachineSettings()


def _connecting(config):
    return Snapshot(state=SessionState.CONNECTING, config=config)


def _effect_types(transition):
    return [type(effect) for effect in transition.effects]


def test_build_request_wire_format():
    config = ConnectionConfig("caster.example.com", 2101, "/TEST", False, "user", "pass")

    request = build_request(config, "NTRIP test/1.0").decode()

    lines = request.split("\r\n")
    assert lines[0] == "GET /TEST HTTP/1.1"
    assert "Host: caster.example.com" in lines
    assert "Accept: */*" in lines
    assert "User-Agent: NTRIP test/1.0" in lines
    assert "Connection: close" in lines
    assert f"Authorization: Basic {base64.b64encode(b'user:pass').decode()}" in lines
    assert request.endswith("\r\n\r\n")


def test_connect_from_idle_resolves(config, settings):
    transition = step(Snapshot(), machine.ConnectRequested(config), settings)

    assert transition.snapshot.state is SessionState.IDLE
    assert transition.effects == (machine.Resolve(config),)


def test_host_resolved_opens_transport(config, settings):
    transition = step(Snapshot(resolving=config), machine.HostResolved(config, ADDRESS), settings)

    assert transition.snapshot.state is SessionState.CONNECTING
    assert transition.snapshot.config == config
    assert transition.effects == (machine.OpenTransport(config, ADDRESS),)


def test_resolution_failure_reports_and_stays_idle(config, settings):
    resolving = Snapshot(resolving=config)

    transition = step(resolving, machine.ResolutionFailed(config, "unknown host"), settings)

    assert transition.snapshot.state is SessionState.IDLE
    assert transition.snapshot.config is None
    [report] = transition.effects
    assert "caster.example.com" in report.message


def test_resolution_result_after_disconnect_is_ignored(config, settings):
    connecting = step(Snapshot(), machine.ConnectRequested(config), settings).snapshot
    idle = step(connecting, machine.DisconnectRequested(), settings).snapshot

    assert step(idle, machine.HostResolved(config, ADDRESS), settings).effects == ()
    assert step(idle, machine.ResolutionFailed(config, "unknown host"), settings).effects == ()


def test_connect_while_active_tears_down_first(config, settings):
    active = Snapshot(state=SessionState.ACTIVE, config=config, gga_timer=True)
    other = replace(config, server="other.example.com")

    transition = step(active, machine.ConnectRequested(other), settings)

    types = _effect_types(transition)
    assert types.index(machine.CloseTransport) < types.index(machine.Resolve)
    assert machine.StopTimer(TimerKind.GGA) in transition.effects
    assert transition.effects[-1] == machine.Resolve(other)
    assert transition.snapshot.config is None


def test_writable_with_empty_mountpoint_sends_nothing(settings):
    config = ConnectionConfig("caster.example.com")

    transition = step(_connecting(config), machine.Writable(), settings)

    assert transition.snapshot.state is SessionState.CONNECTING
    assert not any(isinstance(e, machine.Send) for e in transition.effects)


def test_writable_sends_request_once(config, settings):
    first = step(_connecting(config), machine.Writable(), settings)
    second = step(first.snapshot, machine.Writable(), settings)

    sends = [e for e in first.effects if isinstance(e, machine.Send)]
    assert len(sends) == 1
    assert sends[0].data == build_request(config, settings.user_agent)
    assert first.snapshot.state is SessionState.REQUESTING_AIDING
    assert machine.StartTimer(TimerKind.HANDSHAKE, settings.handshake_timeout) in first.effects
    assert second.effects == ()


def test_handshake_timer_can_be_disabled(config):
    transition = step(
        _connecting(config), machine.Writable(), MachineSettings(handshake_timeout=None)
    )

    assert not any(isinstance(e, machine.StartTimer) for e in transition.effects)
    assert transition.snapshot.handshake_timer is False


def test_readable_routes_by_state(config, settings):
    aiding = Snapshot(state=SessionState.REQUESTING_AIDING, config=config)
    active = Snapshot(state=SessionState.ACTIVE, config=config)

    assert step(aiding, machine.Readable(b"x"), settings).effects == (
        machine.FeedAuthorization(b"x"),
    )
    assert step(active, machine.Readable(b"x"), settings).effects == (machine.FeedRtcm(b"x"),)


def test_unexpected_data_is_reported_with_size_and_hex(settings):
    config = ConnectionConfig("caster.example.com")

    transition = step(_connecting(config), machine.Readable(b"SOURCETABLE"), settings)

    assert transition.snapshot.state is SessionState.CONNECTING
    messages = [e.message for e in transition.effects]
    assert "Unexpected NTRIP response: 11 bytes: (SOURCETABLE)" in messages
    assert f"Data: {b'SOURCETABLE'.hex()}" in messages


def test_authorization_success_with_position(config, settings):
    aiding = Snapshot(state=SessionState.REQUESTING_AIDING, config=config, handshake_timer=True)

    transition = step(aiding, machine.Authorized(AuthorizationOutcome.success()), settings)

    assert transition.snapshot.state is SessionState.ACTIVE
    assert transition.snapshot.gga_timer is True
    assert transition.effects.count(machine.SendGga()) == 1
    assert machine.StartTimer(TimerKind.GGA, settings.gga_interval) in transition.effects
    assert machine.StopTimer(TimerKind.HANDSHAKE) in transition.effects


def test_authorization_success_without_position(config, settings):
    aiding = Snapshot(
        state=SessionState.REQUESTING_AIDING, config=replace(config, send_position=False)
    )

    transition = step(aiding, machine.Authorized(AuthorizationOutcome.success()), settings)

    assert transition.snapshot.state is SessionState.ACTIVE
    assert machine.SendGga() not in transition.effects
    assert transition.snapshot.gga_timer is False


def test_gga_timer_not_started_twice(config, settings):
    aiding = Snapshot(state=SessionState.REQUESTING_AIDING, config=config, gga_timer=True)

    transition = step(aiding, machine.Authorized(AuthorizationOutcome.success()), settings)

    assert not any(isinstance(e, machine.StartTimer) for e in transition.effects)


def test_authorization_failure_reports_and_disconnects(config, settings):
    aiding = Snapshot(state=SessionState.REQUESTING_AIDING, config=config, handshake_timer=True)
    outcome = AuthorizationOutcome.failure(401, "Unauthorized", "bad credentials")

    transition = step(aiding, machine.Authorized(outcome), settings)

    assert transition.snapshot.state is SessionState.IDLE
    assert transition.snapshot.config is None
    report = transition.effects[0]
    assert report == machine.Report("NTRIP auth failure: (401) Unauthorized: bad credentials")
    assert machine.CloseTransport() in transition.effects
    assert not any(isinstance(e, machine.Resolve) for e in transition.effects)


def test_transport_error_reconnects_immediately_with_same_config(config, settings):
    active = Snapshot(state=SessionState.ACTIVE, config=config, gga_timer=True)

    transition = step(active, machine.TransportError("reset"), settings)

    assert isinstance(transition.effects[0], machine.Report)
    assert machine.StopTimer(TimerKind.GGA) in transition.effects
    assert transition.effects[-1] == machine.Resolve(config, 1)
    assert transition.snapshot.reconnect_attempts == 1


def test_transport_error_in_idle_is_ignored(settings):
    transition = step(Snapshot(), machine.TransportError("late"), settings)

    assert transition.effects == ()


def test_open_failure_is_not_retried(config, settings):
    transition = step(_connecting(config), machine.OpenFailed("refused"), settings)

    assert transition.snapshot.state is SessionState.IDLE
    assert not any(isinstance(e, machine.Resolve) for e in transition.effects)


def test_open_failure_during_reconnect_schedules_next_attempt(config, settings):
    snapshot = Snapshot(state=SessionState.CONNECTING, config=config, reconnect_attempts=1)

    transition = step(snapshot, machine.OpenFailed("refused"), settings)

    assert transition.snapshot.state is SessionState.IDLE
    assert transition.snapshot.pending_reconnect == config
    assert transition.snapshot.reconnect_attempts == 2
    assert machine.StartTimer(TimerKind.RECONNECT, 1.0) in transition.effects


def test_resolution_failure_during_reconnect_schedules_next_attempt(config, settings):
    snapshot = Snapshot(reconnect_attempts=1, resolving=config)

    transition = step(snapshot, machine.ResolutionFailed(config, "unknown host"), settings)

    assert transition.snapshot.pending_reconnect == config
    assert machine.StartTimer(TimerKind.RECONNECT, 1.0) in transition.effects


def test_handshake_timeout_during_reconnect_schedules_next_attempt(config, settings):
    aiding = Snapshot(
        state=SessionState.REQUESTING_AIDING, config=config, handshake_timer=True, reconnect_attempts=1
    )

    transition = step(aiding, machine.TimerFired(TimerKind.HANDSHAKE), settings)

    assert machine.CloseTransport() in transition.effects
    assert transition.snapshot.pending_reconnect == config


def test_reconnect_backoff_after_first_attempt(config):
    settings = MachineSettings(reconnect_policy=ReconnectPolicy(backoff=2.0))
    snapshot = Snapshot(state=SessionState.CONNECTING, config=config, reconnect_attempts=1)

    transition = step(snapshot, machine.TransportError("refused"), settings)

    assert transition.snapshot.state is SessionState.IDLE
    assert transition.snapshot.pending_reconnect == config
    assert machine.StartTimer(TimerKind.RECONNECT, 2.0) in transition.effects

    fired = step(transition.snapshot, machine.TimerFired(TimerKind.RECONNECT), settings)

    assert fired.effects == (machine.Resolve(config, 2),)
    assert fired.snapshot.pending_reconnect is None


def test_reconnect_gives_up_after_max_attempts(config):
    settings = MachineSettings(reconnect_policy=ReconnectPolicy(max_attempts=2))
    snapshot = Snapshot(state=SessionState.CONNECTING, config=config, reconnect_attempts=2)

    transition = step(snapshot, machine.TransportError("refused"), settings)

    assert not any(isinstance(e, machine.Resolve) for e in transition.effects)
    assert "giving up after 2 reconnect attempts" in transition.effects[-1].message
    assert transition.snapshot.state is SessionState.IDLE


def test_disconnect_cancels_pending_reconnect(config, settings):
    pending = Snapshot(pending_reconnect=config, reconnect_attempts=2)

    transition = step(pending, machine.DisconnectRequested(), settings)

    assert transition.effects == (machine.StopTimer(TimerKind.RECONNECT),)
    assert transition.snapshot == Snapshot()


def test_disconnect_when_idle_has_no_effects(settings):
    transition = step(Snapshot(), machine.DisconnectRequested(), settings)

    assert transition.effects == ()
    assert transition.snapshot == Snapshot()


def test_handshake_timeout_disconnects(config, settings):
    aiding = Snapshot(state=SessionState.REQUESTING_AIDING, config=config, handshake_timer=True)

    transition = step(aiding, machine.TimerFired(TimerKind.HANDSHAKE), settings)

    assert transition.snapshot.state is SessionState.IDLE
    assert transition.effects[0] == machine.Report("NTRIP handshake timed out after 15s")
    assert machine.CloseTransport() in transition.effects
    assert machine.StopTimer(TimerKind.HANDSHAKE) not in transition.effects


def test_gga_timer_fires_only_when_active(config, settings):
    active = Snapshot(state=SessionState.ACTIVE, config=config, gga_timer=True)

    assert step(active, machine.TimerFired(TimerKind.GGA), settings).effects == (machine.SendGga(),)
    assert step(Snapshot(), machine.TimerFired(TimerKind.GGA), settings).effects == ()
