"""
NTRIPクライアント データ型定義
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

DEFAULT_PORT = 2101


class SessionState(Enum):
    """NTRIPセッションの状態"""
    IDLE = "idle"                  # 接続なし
    CONNECTING = "connecting"      # 名前解決済み、ソケット接続中
    REQUESTING_AIDING = "req_aiding"  # 認証リクエスト送信済み、応答待ち
    ACTIVE = "active"              # RTCMストリーム受信中


@dataclass(frozen=True)
class ConnectionConfig:
    """接続ごとに与えられるNTRIPキャスター接続設定"""
    server: str                    # キャスターのホスト名/IP
    port: int = DEFAULT_PORT       # ポート番号
    mountpoint: str = ""           # マウントポイント（空ならソーステーブル取得）
    send_position: bool = False    # GGAで位置を送信するか
    username: str = ""             # ユーザ名
    password: str = field(default="", repr=False)  # パスワード

    def __post_init__(self):
        if not self.server:
            raise ValueError("server must not be empty")

    @classmethod
    def from_strings(
        cls,
        server: str,
        port: str,
        mountpoint: str = "",
        send_position: bool = False,
        username: str = "",
        password: str = "",
    ) -> "ConnectionConfig":
        """
        UI等から文字列で受け取った設定を変換。

        ポート番号が解釈できない場合はDEFAULT_PORT（2101）を使う。
        マウントポイントの先頭 "/" の補完は呼び出し側の責務。
        """
        return cls(
            server=server.strip(),
            port=parse_port(port),
            mountpoint=mountpoint,
            send_position=send_position,
            username=username,
            password=password,
        )

    @property
    def is_listing(self) -> bool:
        """ソーステーブル取得モードかどうか"""
        return self.mountpoint == ""

    @property
    def description(self) -> str:
        return f"NtripService: {self.server}:{self.port}{self.mountpoint}"


def parse_port(value) -> int:
    """ポート番号を解釈（不正値はDEFAULT_PORT）"""
    try:
        port = int(str(value).strip())
    except (TypeError, ValueError):
        return DEFAULT_PORT
    if not 0 < port < 65536:
        return DEFAULT_PORT
    return port


@dataclass(frozen=True)
class AuthorizationOutcome:
    """キャスターの認証応答"""
    ok: bool
    status: Optional[int] = None   # HTTPステータスコード
    reason: str = ""               # 短い理由（例: "Unauthorized"）
    description: str = ""          # 詳細

    @classmethod
    def success(cls, status: int = 200, reason: str = "OK") -> "AuthorizationOutcome":
        return cls(ok=True, status=status, reason=reason)

    @classmethod
    def failure(
        cls, status: Optional[int], reason: str, description: str = ""
    ) -> "AuthorizationOutcome":
        return cls(ok=False, status=status, reason=reason, description=description)


@dataclass(frozen=True)
class GgaFix:
    """GGA文の生成に使う測位結果"""
    lat: float                     # 緯度（10進数度）
    lon: float                     # 経度（10進数度）
    alt: float                     # 高度（メートル）
    timestamp: datetime            # 測位時刻（UTC）


@dataclass
class GGAData:
    """NMEA GGA文のパース結果"""
    lat: Optional[float]          # 緯度（10進数度）
    lon: Optional[float]          # 経度（10進数度）
    alt: Optional[float]          # 高度（メートル）
    utc_time: Optional[str]       # UTC時刻（hhmmss.ss）
    quality: Optional[int]        # GPS品質（1=単独, 2=DGPS, 4=RTK Fix, 5=RTK Float）
    num_sats: Optional[int]       # 使用衛星数
    hdop: Optional[float]         # 水平精度低下率
    diff_age: Optional[float]     # 差分補正データの経過時間（秒）
    ref_station_id: Optional[str] # 基準局ID
    timestamp: float              # 受信時刻（Unix時間）
    raw: str                      # 生のNMEA文

    @property
    def is_valid(self) -> bool:
        """有効な位置データかどうか"""
        return (
            self.lat is not None
            and self.lon is not None
            and self.quality is not None
            and self.quality > 0
        )


@dataclass(frozen=True)
class ReconnectPolicy:
    """
    ストリーム異常時の自動再接続ポリシー

    デフォルト（max_attempts=None, first_delay=0）は回数無制限・即時再接続。
    2回目以降の連続失敗は backoff * multiplier**(n-2) 秒待つ（上限 max_backoff）。
    """
    max_attempts: Optional[int] = None
    first_delay: float = 0.0
    backoff: float = 1.0
    max_backoff: float = 60.0
    multiplier: float = 2.0

    @classmethod
    def disabled(cls) -> "ReconnectPolicy":
        return cls(max_attempts=0)

    def allows(self, attempt: int) -> bool:
        """attempt回目（1始まり）の再接続を行うか"""
        return self.max_attempts is None or attempt <= self.max_attempts

    def delay_for(self, attempt: int) -> float:
        if attempt <= 1:
            return self.first_delay
        return min(self.backoff * self.multiplier ** (attempt - 2), self.max_backoff)
