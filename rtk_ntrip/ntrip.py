"""
NTRIPクライアント（スレッド上でイベントループを動かす）
"""

import asyncio
import concurrent.futures
import logging
import threading
from typing import Callable, Optional

from .machine import DEFAULT_GGA_INTERVAL, DEFAULT_HANDSHAKE_TIMEOUT, DEFAULT_USER_AGENT
from .session import NtripSession, PositionSource, RtcmSink
from .types import ConnectionConfig, ReconnectPolicy, SessionState

LOGGER = logging.getLogger(__name__)

DEFAULT_CALL_TIMEOUT = 30.0


class NtripClient(threading.Thread):
    """NTRIPクライアント（RTCM補正データ受信）"""

    def __init__(
        self,
        sink: Optional[RtcmSink] = None,
        position_source: Optional[PositionSource] = None,
        on_error: Optional[Callable[[str], None]] = None,
        gga_interval: float = DEFAULT_GGA_INTERVAL,
        handshake_timeout: Optional[float] = DEFAULT_HANDSHAKE_TIMEOUT,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        """
        Args:
            sink: RTCMメッセージの出力先（deliver(bytes)を持つ）
            position_source: GGA送信用の位置情報ソース（current_fix()を持つ）
            on_error: エラー表示用コールバック（文字列）
            gga_interval: GGA送信間隔（秒）
            handshake_timeout: 認証応答待ちタイムアウト（秒）
            reconnect_policy: ストリーム異常時の再接続ポリシー
            user_agent: リクエストのUser-Agent
        """
        super().__init__(name="ntrip-client", daemon=True)
        self._session_kwargs = dict(
            sink=sink,
            position_source=position_source,
            on_error=on_error,
            gga_interval=gga_interval,
            handshake_timeout=handshake_timeout,
            reconnect_policy=reconnect_policy,
            user_agent=user_agent,
        )
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._session: Optional[NtripSession] = None
        self._ready = threading.Event()

    @property
    def session(self) -> Optional[NtripSession]:
        return self._session

    @property
    def state(self) -> SessionState:
        """現在の状態"""
        if self._session is None:
            return SessionState.IDLE
        return self._session.state

    @property
    def is_connected(self) -> bool:
        """RTCMストリーム受信中かどうか"""
        return self.state is SessionState.ACTIVE

    @property
    def total_bytes(self) -> int:
        """キャスターから受信した総バイト数"""
        return self._session.total_bytes if self._session else 0

    def run(self):
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        self._session = NtripSession(loop, **self._session_kwargs)
        self._ready.set()
        try:
            loop.run_forever()
        finally:
            self._session.disconnect()
            loop.close()
            LOGGER.info("NTRIP client stopped")

    def connect(self, config: ConnectionConfig, timeout: float = DEFAULT_CALL_TIMEOUT):
        """
        キャスターへ接続（イベントループで適用されるまで待つ）

        Args:
            config: 接続設定
            timeout: 待ち時間（秒）
        """
        self._call(lambda: self._session.connect(config), timeout=timeout)

    def disconnect(self, timeout: float = DEFAULT_CALL_TIMEOUT):
        """切断（戻った時点でGGA送信・受信は停止している）"""
        if not self.is_alive():
            return
        self._call(lambda: self._session.disconnect(), timeout=timeout)

    def stop(self, timeout: float = 5.0):
        """クライアントを停止（コールバック内から呼んだ場合はjoinしない）"""
        if not self.is_alive():
            return
        self.disconnect()
        self._loop.call_soon_threadsafe(self._loop.stop)
        if threading.current_thread() is not self:
            self.join(timeout=timeout)

    def _call(self, func: Callable, timeout: float = DEFAULT_CALL_TIMEOUT):
        # イベントループのスレッドで実行し、完了まで待つ
        if threading.current_thread() is self:
            # コールバック内からの呼び出しはその場で実行（セッション側でキューに積まれる）
            return func()
        if not self.is_alive():
            self.start()
        if not self._ready.wait(timeout):
            raise TimeoutError("NTRIP event loop did not start")
        future: concurrent.futures.Future = concurrent.futures.Future()

        def run():
            try:
                future.set_result(func())
            except BaseException as exc:
                future.set_exception(exc)

        self._loop.call_soon_threadsafe(run)
        return future.result(timeout)
