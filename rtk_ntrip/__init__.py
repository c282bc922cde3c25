"""
NTRIP RTKクライアント ライブラリ

NTRIPキャスターへBasic認証で接続し、RTCM補正データを受信してGNSS受信機へ中継する。
必要に応じて現在位置をGGA文でキャスターへ定期送信する。

使用例:
    from rtk_ntrip import ConnectionConfig, GnssReceiver, NtripClient

    # 受信機（位置情報ソース兼RTCM出力先）
    receiver = GnssReceiver("/dev/ttyUSB0")
    receiver.start()

    # NTRIPで補正データを受信
    client = NtripClient(sink=receiver, position_source=receiver, on_error=print)
    client.connect(ConnectionConfig(
        server="rtk.example.com",
        port=2101,
        mountpoint="/RTCM3",
        send_position=True,
        username="user",
        password="pass",
    ))

    while True:
        print(client.state, client.total_bytes)
        time.sleep(1.0)
"""

from .machine import DEFAULT_GGA_INTERVAL, DEFAULT_HANDSHAKE_TIMEOUT, build_request
from .nmea import build_gga, nmea_checksum, nmea_deg_to_decimal, parse_gga
from .ntrip import NtripClient
from .parser import NtripResponseParser
from .receiver import FixedPosition, GnssReceiver
from .session import NtripSession
from .transport import NtripError, ResolutionError
from .types import (
    DEFAULT_PORT,
    AuthorizationOutcome,
    ConnectionConfig,
    GGAData,
    GgaFix,
    ReconnectPolicy,
    SessionState,
)

__version__ = "1.0.0"
__all__ = [
    "NtripClient",
    "NtripSession",
    "NtripResponseParser",
    "GnssReceiver",
    "FixedPosition",
    "ConnectionConfig",
    "SessionState",
    "AuthorizationOutcome",
    "GgaFix",
    "GGAData",
    "ReconnectPolicy",
    "NtripError",
    "ResolutionError",
    "DEFAULT_PORT",
    "DEFAULT_GGA_INTERVAL",
    "DEFAULT_HANDSHAKE_TIMEOUT",
    "build_gga",
    "build_request",
    "nmea_checksum",
    "nmea_deg_to_decimal",
    "parse_gga",
]
