"""
NTRIPセッション状態遷移

I/Oを一切行わない純粋関数 step() で (状態, イベント) -> (状態, エフェクト) を計算する。
エフェクトの実行（ソケット・タイマー・コールバック）は session.NtripSession が担当。
"""

import base64
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional, Tuple

from .types import AuthorizationOutcome, ConnectionConfig, ReconnectPolicy, SessionState

__version__ = "1.0.0"

DEFAULT_GGA_INTERVAL = 5.0
DEFAULT_HANDSHAKE_TIMEOUT = 15.0
DEFAULT_USER_AGENT = f"NTRIP rtk-ntrip/{__version__}"


class TimerKind(Enum):
    GGA = "gga"               # GGA定期送信（繰り返し）
    HANDSHAKE = "handshake"   # 認証応答待ちタイムアウト（1回）
    RECONNECT = "reconnect"   # 再接続待ち（1回）


@dataclass(frozen=True)
class MachineSettings:
    """状態遷移に必要な設定値"""
    gga_interval: float = DEFAULT_GGA_INTERVAL
    handshake_timeout: Optional[float] = DEFAULT_HANDSHAKE_TIMEOUT
    reconnect_policy: ReconnectPolicy = field(default_factory=ReconnectPolicy)
    user_agent: str = DEFAULT_USER_AGENT


@dataclass(frozen=True)
class Snapshot:
    """セッションの状態（イミュータブル）"""
    state: SessionState = SessionState.IDLE
    config: Optional[ConnectionConfig] = None
    gga_timer: bool = False
    handshake_timer: bool = False
    pending_reconnect: Optional[ConnectionConfig] = None
    reconnect_attempts: int = 0
    resolving: Optional[ConnectionConfig] = None  # 名前解決の結果待ち


# --- イベント ---------------------------------------------------------------

@dataclass(frozen=True)
class ConnectRequested:
    config: ConnectionConfig


@dataclass(frozen=True)
class DisconnectRequested:
    pass


@dataclass(frozen=True)
class HostResolved:
    config: ConnectionConfig
    address: Any


@dataclass(frozen=True)
class ResolutionFailed:
    config: ConnectionConfig
    error: str


@dataclass(frozen=True)
class Writable:
    pass


@dataclass(frozen=True)
class Readable:
    data: bytes


@dataclass(frozen=True)
class Authorized:
    outcome: AuthorizationOutcome


@dataclass(frozen=True)
class OpenFailed:
    error: str


@dataclass(frozen=True)
class TransportError:
    error: str


@dataclass(frozen=True)
class TimerFired:
    kind: TimerKind


# --- エフェクト -------------------------------------------------------------

@dataclass(frozen=True)
class Resolve:
    config: ConnectionConfig
    attempt: int = 0  # 0は明示的な接続、1以上は自動再接続


@dataclass(frozen=True)
class OpenTransport:
    config: ConnectionConfig
    address: Any


@dataclass(frozen=True)
class CloseTransport:
    pass


@dataclass(frozen=True)
class Send:
    data: bytes
    label: str


@dataclass(frozen=True)
class SendGga:
    pass


@dataclass(frozen=True)
class FeedAuthorization:
    data: bytes


@dataclass(frozen=True)
class FeedRtcm:
    data: bytes


@dataclass(frozen=True)
class StartTimer:
    kind: TimerKind
    delay: float


@dataclass(frozen=True)
class StopTimer:
    kind: TimerKind


@dataclass(frozen=True)
class Report:
    """呼び出し側のエラー表示チャネルへ通知"""
    message: str


@dataclass(frozen=True)
class Note:
    """ログのみ（呼び出し側へは通知しない）"""
    message: str


@dataclass(frozen=True)
class Transition:
    snapshot: Snapshot
    effects: Tuple[Any, ...] = ()


def build_request(config: ConnectionConfig, user_agent: str = DEFAULT_USER_AGENT) -> bytes:
    """
    マウントポイントへのBasic認証付きGETリクエストを生成。

    Args:
        config: 接続設定（mountpointは "/" 始まりに正規化済みであること）
        user_agent: User-Agentヘッダー

    Returns:
        送信するリクエスト（空行で終端）
    """
    auth = base64.b64encode(f"{config.username}:{config.password}".encode()).decode()
    return (
        f"GET {config.mountpoint} HTTP/1.1\r\n"
        f"Host: {config.server}\r\n"
        f"Accept: */*\r\n"
        f"User-Agent: {user_agent}\r\n"
        f"Authorization: Basic {auth}\r\n"
        f"Connection: close\r\n"
        f"\r\n"
    ).encode()


def describe_failure(outcome: AuthorizationOutcome) -> str:
    return f"NTRIP auth failure: ({outcome.status}) {outcome.reason}: {outcome.description}"


def describe_unexpected(data: bytes) -> Tuple[str, str]:
    text = data.decode("utf-8", errors="replace")
    return (
        f"Unexpected NTRIP response: {len(data)} bytes: ({text})",
        f"Data: {data.hex()}",
    )


def _teardown(snapshot: Snapshot) -> Tuple[Snapshot, Tuple[Any, ...]]:
    """GGAタイマー停止、トランスポートを閉じてIDLEへ"""
    effects = []
    if snapshot.gga_timer:
        effects.append(StopTimer(TimerKind.GGA))
    if snapshot.handshake_timer:
        effects.append(StopTimer(TimerKind.HANDSHAKE))
    if snapshot.pending_reconnect is not None:
        effects.append(StopTimer(TimerKind.RECONNECT))
    if snapshot.state is not SessionState.IDLE:
        effects.append(CloseTransport())
    return (
        replace(
            snapshot,
            state=SessionState.IDLE,
            config=None,
            gga_timer=False,
            handshake_timer=False,
            pending_reconnect=None,
            resolving=None,
        ),
        tuple(effects),
    )


def _reconnect(
    snapshot: Snapshot, config: ConnectionConfig, settings: MachineSettings
) -> Transition:
    policy = settings.reconnect_policy
    attempt = snapshot.reconnect_attempts + 1
    if not policy.allows(attempt):
        return Transition(
            replace(snapshot, reconnect_attempts=0),
            (Report(f"NTRIP giving up after {attempt - 1} reconnect attempts"),),
        )
    delay = policy.delay_for(attempt)
    snapshot = replace(snapshot, reconnect_attempts=attempt)
    if delay <= 0:
        return Transition(replace(snapshot, resolving=config), (Resolve(config, attempt),))
    return Transition(
        replace(snapshot, pending_reconnect=config),
        (
            Note(f"reconnecting to {config.description} in {delay:.1f}s (attempt {attempt})"),
            StartTimer(TimerKind.RECONNECT, delay),
        ),
    )


def _fail(
    snapshot: Snapshot, report: Report, config: ConnectionConfig, settings: MachineSettings
) -> Transition:
    """接続失敗: 再接続中ならポリシーに従って再試行、呼び出し側の接続ならIDLEで終了"""
    retrying = snapshot.reconnect_attempts > 0
    snapshot, effects = _teardown(snapshot)
    if not retrying:
        return Transition(replace(snapshot, reconnect_attempts=0), (report,) + effects)
    retry = _reconnect(snapshot, config, settings)
    return Transition(retry.snapshot, (report,) + effects + retry.effects)


def step(snapshot: Snapshot, event: Any, settings: MachineSettings) -> Transition:
    """
    状態遷移を1ステップ計算。

    Args:
        snapshot: 現在の状態
        event: 発生したイベント
        settings: タイマー間隔・再接続ポリシー等

    Returns:
        次の状態と実行すべきエフェクト
    """
    state = snapshot.state

    if isinstance(event, ConnectRequested):
        effects = ()
        if state is not SessionState.IDLE or snapshot.pending_reconnect is not None:
            previous = snapshot.config or snapshot.pending_reconnect
            snapshot, effects = _teardown(snapshot)
            effects = (Note(f"Disconnecting from {previous.description}"),) + effects
        snapshot = replace(snapshot, reconnect_attempts=0, resolving=event.config)
        return Transition(snapshot, effects + (Resolve(event.config),))

    if isinstance(event, DisconnectRequested):
        snapshot, effects = _teardown(snapshot)
        return Transition(replace(snapshot, reconnect_attempts=0), effects)

    if isinstance(event, HostResolved):
        # 解決待ちの間に切断・再接続された場合は古い結果を捨てる
        if snapshot.resolving != event.config:
            return Transition(snapshot)
        return Transition(
            replace(
                snapshot, state=SessionState.CONNECTING, config=event.config, resolving=None
            ),
            (OpenTransport(event.config, event.address),),
        )

    if isinstance(event, ResolutionFailed):
        if snapshot.resolving != event.config:
            return Transition(snapshot)
        report = Report(f"Unable to resolve hostname {event.config.server}: {event.error}")
        return _fail(snapshot, report, event.config, settings)

    if isinstance(event, Writable):
        # CONNECTINGの間だけ送信するので、書き込み可能通知が複数回来ても再送しない
        if state is not SessionState.CONNECTING:
            return Transition(snapshot)
        config = snapshot.config
        if config.is_listing:
            return Transition(
                snapshot,
                (Note("An empty mountpoint can be used for listing mountpoints"),),
            )
        effects = [
            Note(f"requestAiding for {config.description}"),
            Send(build_request(config, settings.user_agent), "request"),
        ]
        handshake_timer = False
        if settings.handshake_timeout is not None:
            effects.append(StartTimer(TimerKind.HANDSHAKE, settings.handshake_timeout))
            handshake_timer = True
        return Transition(
            replace(
                snapshot,
                state=SessionState.REQUESTING_AIDING,
                handshake_timer=handshake_timer,
            ),
            tuple(effects),
        )

    if isinstance(event, Readable):
        if state is SessionState.REQUESTING_AIDING:
            return Transition(snapshot, (FeedAuthorization(event.data),))
        if state is SessionState.ACTIVE:
            return Transition(snapshot, (FeedRtcm(event.data),))
        text, hexdump = describe_unexpected(event.data)
        return Transition(snapshot, (Report(text), Report(hexdump)))

    if isinstance(event, Authorized):
        if state is not SessionState.REQUESTING_AIDING:
            return Transition(snapshot)
        outcome = event.outcome
        if not outcome.ok:
            report = Report(describe_failure(outcome))
            snapshot, effects = _teardown(snapshot)
            return Transition(
                replace(snapshot, reconnect_attempts=0), (report,) + effects
            )
        effects = []
        if snapshot.handshake_timer:
            effects.append(StopTimer(TimerKind.HANDSHAKE))
        # ヘッダーと同じパケットで届いたRTCMを処理
        effects.append(FeedRtcm(b""))
        gga_timer = snapshot.gga_timer
        if snapshot.config.send_position:
            effects.append(SendGga())
            if not gga_timer:
                effects.append(StartTimer(TimerKind.GGA, settings.gga_interval))
                gga_timer = True
        return Transition(
            replace(
                snapshot,
                state=SessionState.ACTIVE,
                handshake_timer=False,
                gga_timer=gga_timer,
                reconnect_attempts=0,
            ),
            tuple(effects),
        )

    if isinstance(event, OpenFailed):
        if state is SessionState.IDLE:
            return Transition(snapshot)
        report = Report(f"NTRIP connection to {snapshot.config.description} failed: {event.error}")
        return _fail(snapshot, report, snapshot.config, settings)

    if isinstance(event, TransportError):
        if state is SessionState.IDLE:
            return Transition(snapshot)
        report = Report(f"NTRIP stream error occurred: {event.error}")
        config = snapshot.config
        snapshot, effects = _teardown(snapshot)
        retry = _reconnect(snapshot, config, settings)
        return Transition(retry.snapshot, (report,) + effects + retry.effects)

    if isinstance(event, TimerFired):
        if event.kind is TimerKind.GGA:
            if state is SessionState.ACTIVE and snapshot.config.send_position:
                return Transition(snapshot, (SendGga(),))
            return Transition(snapshot)
        if event.kind is TimerKind.HANDSHAKE:
            if state is not SessionState.REQUESTING_AIDING:
                return Transition(snapshot)
            report = Report(
                f"NTRIP handshake timed out after {settings.handshake_timeout:g}s"
            )
            return _fail(
                replace(snapshot, handshake_timer=False), report, snapshot.config, settings
            )
        if event.kind is TimerKind.RECONNECT:
            config = snapshot.pending_reconnect
            if config is None:
                return Transition(snapshot)
            return Transition(
                replace(snapshot, pending_reconnect=None, resolving=config),
                (Resolve(config, snapshot.reconnect_attempts),),
            )

    return Transition(snapshot)
