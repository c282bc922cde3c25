"""
NTRIPセッション

machine.step() が返すエフェクトを実行し、トランスポート・タイマー・パーサー・
位置情報ソース・RTCM出力先をつなぐ。イベントループのスレッドからのみ呼び出すこと。
"""

import logging
from collections import deque
from typing import Any, Callable, Dict, Optional, Protocol

from . import machine
from .machine import MachineSettings, Snapshot, TimerKind
from .nmea import build_gga, format_gga_line
from .parser import NtripResponseParser, message_type
from .transport import ResolutionError, TcpTransport, resolve_host
from .types import ConnectionConfig, GgaFix, ReconnectPolicy, SessionState

LOGGER = logging.getLogger(__name__)


class PositionSource(Protocol):
    """GGA送信用の現在位置を返す"""

    def current_fix(self) -> Optional[GgaFix]: ...


class RtcmSink(Protocol):
    """RTCMメッセージの出力先（受信機など）"""

    def deliver(self, message: bytes) -> None: ...


class NtripSession:
    """NTRIPキャスターとの1セッション分の状態機械"""

    def __init__(
        self,
        loop,
        *,
        sink: Optional[RtcmSink] = None,
        position_source: Optional[PositionSource] = None,
        on_error: Optional[Callable[[str], None]] = None,
        parser: Optional[NtripResponseParser] = None,
        resolver: Callable[[str, int], Any] = resolve_host,
        transport_factory: Optional[Callable[[Any, Any], Any]] = None,
        gga_interval: float = machine.DEFAULT_GGA_INTERVAL,
        handshake_timeout: Optional[float] = machine.DEFAULT_HANDSHAKE_TIMEOUT,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        user_agent: str = machine.DEFAULT_USER_AGENT,
    ):
        """
        Args:
            loop: call_later() を持つイベントループ（asyncio互換）
            sink: RTCMメッセージの出力先
            position_source: GGA送信用の位置情報ソース
            on_error: エラー表示用コールバック（文字列）
            parser: 応答パーサー（省略時は NtripResponseParser）
            resolver: ホスト名解決関数 (host, port) -> address
            transport_factory: (address, listener) -> トランスポート
            gga_interval: GGA送信間隔（秒）
            handshake_timeout: 認証応答待ちタイムアウト（秒、Noneで無効）
            reconnect_policy: ストリーム異常時の再接続ポリシー
            user_agent: リクエストのUser-Agent
        """
        self._loop = loop
        self._sink = sink
        self._position_source = position_source
        self._on_error = on_error
        self._parser = parser or NtripResponseParser()
        self._resolver = resolver
        self._transport_factory = transport_factory or (
            lambda address, listener: TcpTransport(loop, address, listener)
        )
        self._settings = MachineSettings(
            gga_interval=gga_interval,
            handshake_timeout=handshake_timeout,
            reconnect_policy=reconnect_policy or ReconnectPolicy(),
            user_agent=user_agent,
        )
        self._snapshot = Snapshot()
        self._transport = None
        self._timers: Dict[TimerKind, Any] = {}
        self._events: deque = deque()
        self._dispatching = False

        self.total_bytes = 0
        self.message_count = 0
        self.reconnect_count = 0

    @property
    def state(self) -> SessionState:
        return self._snapshot.state

    @property
    def config(self) -> Optional[ConnectionConfig]:
        """接続中の設定（IDLEならNone）"""
        return self._snapshot.config

    @property
    def is_active(self) -> bool:
        return self._snapshot.state is SessionState.ACTIVE

    @property
    def gga_timer_running(self) -> bool:
        return TimerKind.GGA in self._timers

    def connect(self, config: ConnectionConfig):
        """
        キャスターへ接続（接続中なら先に切断する）

        名前解決に失敗した場合はエラーを通知してIDLEのまま戻る。
        """
        self._dispatch(machine.ConnectRequested(config))

    def disconnect(self):
        """切断（IDLEで呼んでも何もしない）"""
        self._dispatch(machine.DisconnectRequested())

    # トランスポートイベント ------------------------------------------------
    def on_open(self):
        LOGGER.debug("transport opened")

    def on_open_failed(self, exc: BaseException):
        self._dispatch(machine.OpenFailed(_describe(exc)))

    def on_writable(self):
        self._dispatch(machine.Writable())

    def on_readable(self, data: bytes):
        LOGGER.debug("received %d bytes in state %s", len(data), self.state.value)
        self.total_bytes += len(data)
        self._dispatch(machine.Readable(data))

    def on_error(self, exc: BaseException):
        self._dispatch(machine.TransportError(_describe(exc)))

    def on_closed(self):
        self._transport = None
        self._dispatch(machine.TransportError("connection closed by caster"))

    # 状態遷移 --------------------------------------------------------------
    def _dispatch(self, event):
        self._events.append(event)
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._events:
                current = self._events.popleft()
                before = self._snapshot.state
                transition = machine.step(self._snapshot, current, self._settings)
                self._snapshot = transition.snapshot
                if transition.snapshot.state is not before:
                    LOGGER.info("state %s -> %s", before.value, transition.snapshot.state.value)
                for effect in transition.effects:
                    self._apply(effect)
        finally:
            self._events.clear()
            self._dispatching = False

    def _apply(self, effect):
        if isinstance(effect, machine.Resolve):
            self._resolve(effect)
        elif isinstance(effect, machine.OpenTransport):
            self._open(effect)
        elif isinstance(effect, machine.CloseTransport):
            self._close()
        elif isinstance(effect, machine.Send):
            self._send(effect.data, effect.label)
        elif isinstance(effect, machine.SendGga):
            self._send_gga()
        elif isinstance(effect, machine.FeedAuthorization):
            outcome = self._parser.parse_authorization(effect.data)
            if outcome is not None:
                LOGGER.debug("authorization outcome %s", outcome)
                self._events.append(machine.Authorized(outcome))
        elif isinstance(effect, machine.FeedRtcm):
            self._feed_rtcm(effect.data)
        elif isinstance(effect, machine.StartTimer):
            self._start_timer(effect.kind, effect.delay)
        elif isinstance(effect, machine.StopTimer):
            self._stop_timer(effect.kind)
        elif isinstance(effect, machine.Report):
            self._report(effect.message)
        elif isinstance(effect, machine.Note):
            LOGGER.info(effect.message)
        else:
            raise TypeError(f"unknown effect: {effect!r}")

    def _resolve(self, effect: machine.Resolve):
        config = effect.config
        if effect.attempt:
            self.reconnect_count += 1
            LOGGER.info("reconnecting to %s (attempt %d)", config.description, effect.attempt)
        try:
            address = self._resolver(config.server, config.port)
        except ResolutionError as exc:
            LOGGER.warning("unable to resolve hostname %s", config.server)
            self._events.append(machine.ResolutionFailed(config, str(exc)))
            return
        self._events.append(machine.HostResolved(config, address))

    def _open(self, effect: machine.OpenTransport):
        self._parser.reset()
        LOGGER.info("connecting to %s", effect.config.description)
        self._transport = self._transport_factory(effect.address, self)
        self._transport.open()

    def _close(self):
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.close()

    def _send(self, data: bytes, label: str):
        if self._transport is None:
            LOGGER.debug("no transport; dropping %s", label)
            return
        LOGGER.debug("sending %s (%d bytes)", label, len(data))
        try:
            self._transport.write(data)
        except OSError as exc:
            self._events.append(machine.TransportError(_describe(exc)))

    def _send_gga(self):
        fix = None
        if self._position_source is not None:
            try:
                fix = self._position_source.current_fix()
            except Exception:
                LOGGER.exception("position source failed")
        sentence = build_gga(fix)
        if not sentence:
            LOGGER.debug("no position fix yet; GGA not sent")
            return
        LOGGER.debug("Sending GGA %s", sentence)
        self._send(format_gga_line(sentence), "GGA")

    def _feed_rtcm(self, data: bytes):
        for frame in self._parser.parse_rtcm(data):
            self.message_count += 1
            LOGGER.debug("RTCM %s (%d bytes)", message_type(frame), len(frame))
            if self._sink is None:
                continue
            try:
                self._sink.deliver(frame)
            except Exception:
                LOGGER.exception("RTCM sink failed")

    def _start_timer(self, kind: TimerKind, delay: float):
        self._stop_timer(kind)
        self._timers[kind] = self._loop.call_later(delay, self._on_timer, kind, delay)

    def _stop_timer(self, kind: TimerKind):
        handle = self._timers.pop(kind, None)
        if handle is not None:
            handle.cancel()

    def _on_timer(self, kind: TimerKind, delay: float):
        if kind is TimerKind.GGA:
            # 繰り返しタイマー: 先に次回を予約（停止されればキャンセルされる）
            self._timers[kind] = self._loop.call_later(delay, self._on_timer, kind, delay)
        else:
            self._timers.pop(kind, None)
        self._dispatch(machine.TimerFired(kind))

    def _report(self, message: str):
        LOGGER.error(message)
        if self._on_error is None:
            return
        try:
            self._on_error(message)
        except Exception:
            LOGGER.exception("error callback failed")


def _describe(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__
