"""
シリアル接続のGNSS受信機

受信機が出力するGGA文から現在位置を取得し（PositionSource）、
NTRIPで受信したRTCMを受信機へ書き込む（RtcmSink）。

使用例:
    from rtk_ntrip import ConnectionConfig, GnssReceiver, NtripClient

    receiver = GnssReceiver("/dev/ttyUSB0")
    receiver.start()

    client = NtripClient(sink=receiver, position_source=receiver)
    client.connect(ConnectionConfig("rtk.example.com", 2101, "/RTCM3", True, "user", "pass"))
"""

import logging
import queue
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional

try:
    import serial
except ImportError:
    serial = None

from .nmea import parse_gga
from .types import GGAData, GgaFix

LOGGER = logging.getLogger(__name__)

DEFAULT_BAUD = 115200
DEFAULT_SERIAL_TIMEOUT = 0.5
DEFAULT_MAX_FIX_AGE = 10.0  # 秒
DEFAULT_WRITE_TIMEOUT = 1.0  # 秒
DEFAULT_WRITE_QUEUE = 64  # RTCMメッセージ数


def gga_to_fix(gga: Optional[GGAData], now: Optional[datetime] = None) -> Optional[GgaFix]:
    """
    GGAパース結果をGgaFixに変換。

    GGAには日付が無いため、nowのUTC日付と組み合わせる。

    Returns:
        GgaFix、または有効な測位でなければNone
    """
    if gga is None or not gga.is_valid:
        return None
    now = now or datetime.now(timezone.utc)
    timestamp = now
    if gga.utc_time and len(gga.utc_time) >= 6:
        try:
            timestamp = now.replace(
                hour=int(gga.utc_time[0:2]),
                minute=int(gga.utc_time[2:4]),
                second=int(gga.utc_time[4:6]),
                microsecond=0,
            )
        except ValueError:
            timestamp = now
    return GgaFix(
        lat=gga.lat,
        lon=gga.lon,
        alt=gga.alt if gga.alt is not None else 0.0,
        timestamp=timestamp,
    )


class FixedPosition:
    """固定位置を返す位置情報ソース（基準局・テスト用）"""

    def __init__(self, lat: float, lon: float, alt: float = 0.0):
        self.lat = lat
        self.lon = lon
        self.alt = alt

    def current_fix(self) -> Optional[GgaFix]:
        return GgaFix(self.lat, self.lon, self.alt, datetime.now(timezone.utc))


class GnssReceiver:
    """
    シリアル接続のGNSS受信機（位置情報ソース兼RTCM出力先）

    deliver() はキューに積むだけで戻り、書き込みは専用スレッドが行う。
    キューが満杯の間に届いたRTCMは破棄する。
    """

    def __init__(
        self,
        port: str,
        baud: int = DEFAULT_BAUD,
        timeout: float = DEFAULT_SERIAL_TIMEOUT,
        max_fix_age: float = DEFAULT_MAX_FIX_AGE,
        write_timeout: float = DEFAULT_WRITE_TIMEOUT,
        write_queue: int = DEFAULT_WRITE_QUEUE,
    ):
        """
        Args:
            port: シリアルポート（例: "/dev/ttyUSB0"）
            baud: ボーレート
            timeout: readlineのタイムアウト（秒）
            max_fix_age: この秒数より古いGGAは位置として使わない
            write_timeout: 1メッセージの書き込みタイムアウト（秒）
            write_queue: 書き込み待ちにできるRTCMメッセージ数
        """
        if serial is None:
            raise ImportError("pyserial is required. Install with: pip install pyserial")

        self.port = port
        self.baud = baud
        self.timeout = timeout
        self.max_fix_age = max_fix_age
        self.write_timeout = write_timeout

        self._serial = None
        self._data_lock = threading.Lock()
        self._outbox: "queue.Queue[bytes]" = queue.Queue(maxsize=write_queue)

        self._latest: Optional[GGAData] = None
        self._rtcm_bytes = 0
        self._rtcm_messages = 0
        self._rtcm_dropped = 0
        self._on_gga: Optional[Callable[[GGAData], None]] = None

        self._threads = []
        self._stopping = threading.Event()

    def open(self):
        """シリアルポートを開く"""
        self._serial = serial.Serial(
            self.port, self.baud, timeout=self.timeout, write_timeout=self.write_timeout
        )
        LOGGER.info("opened %s at %d baud", self.port, self.baud)

    def close(self):
        port, self._serial = self._serial, None
        if port is not None:
            port.close()

    def start(self):
        """ポートを開いて読み取り・書き込みスレッドを起動"""
        if self._serial is None:
            self.open()
        self._stopping.clear()
        self._threads = [
            threading.Thread(target=self._read_sentences, name="gnss-reader", daemon=True),
            threading.Thread(target=self._write_messages, name="gnss-writer", daemon=True),
        ]
        for thread in self._threads:
            thread.start()

    def stop(self):
        """スレッドを停止してポートを閉じる"""
        self._stopping.set()
        for thread in self._threads:
            thread.join(timeout=2.0)
        self.close()

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    # PositionSource --------------------------------------------------------
    def current_fix(self) -> Optional[GgaFix]:
        """
        最新の測位結果を取得

        Returns:
            GgaFix（未測位、またはmax_fix_ageより古い場合はNone）
        """
        latest = self.get_gga()
        if latest is None or time.time() - latest.timestamp > self.max_fix_age:
            return None
        return gga_to_fix(latest)

    # RtcmSink --------------------------------------------------------------
    def deliver(self, message: bytes):
        """RTCMメッセージを書き込みキューに積む（ポート未接続・満杯なら破棄）"""
        if self._serial is None:
            LOGGER.debug("port closed; dropping %d RTCM bytes", len(message))
            return
        try:
            self._outbox.put_nowait(message)
        except queue.Full:
            with self._data_lock:
                self._rtcm_dropped += 1
            LOGGER.warning("RTCM write queue full on %s; dropping %d bytes", self.port, len(message))

    def get_gga(self) -> Optional[GGAData]:
        """最新のGGAデータを取得"""
        with self._data_lock:
            return self._latest

    def get_rtcm_bytes(self) -> int:
        """受信機へ書き込んだRTCMバイト数"""
        with self._data_lock:
            return self._rtcm_bytes

    def get_rtcm_messages(self) -> int:
        with self._data_lock:
            return self._rtcm_messages

    def get_rtcm_dropped(self) -> int:
        """キュー満杯で破棄したRTCMメッセージ数"""
        with self._data_lock:
            return self._rtcm_dropped

    def set_gga_callback(self, callback: Optional[Callable[[GGAData], None]]):
        """GGA受信時のコールバックを設定（GGAData -> None）"""
        self._on_gga = callback

    def _write_messages(self):
        while not self._stopping.is_set():
            try:
                message = self._outbox.get(timeout=0.2)
            except queue.Empty:
                continue
            port = self._serial
            if port is None:
                continue
            try:
                port.write(message)
            except serial.SerialException as exc:
                # SerialTimeoutExceptionを含む
                LOGGER.warning("serial write failed on %s: %s", self.port, exc)
                continue
            with self._data_lock:
                self._rtcm_bytes += len(message)
                self._rtcm_messages += 1

    def _read_sentences(self):
        for line in self._lines():
            gga = parse_gga(line)
            if gga is None:
                continue
            with self._data_lock:
                self._latest = gga
            if self._on_gga is None:
                continue
            try:
                self._on_gga(gga)
            except Exception:
                LOGGER.exception("GGA callback failed")

    def _lines(self):
        # 停止まで受信行を返す（タイムアウト時の空行は飛ばす）
        while not self._stopping.is_set():
            port = self._serial
            if port is None:
                return
            try:
                raw = port.readline()
            except serial.SerialException as exc:
                LOGGER.error("serial read failed on %s: %s", self.port, exc)
                self._stopping.wait(1.0)
                continue
            line = raw.decode("ascii", errors="ignore").strip()
            if line:
                yield line
