"""
NMEA GGA文の生成とパース
"""

import time
from datetime import timezone
from typing import Optional, Tuple

from .types import GGAData, GgaFix

# 衛星情報を持たないため固定値を入れる（品質=単独測位, 衛星数=10, HDOP=1）
GGA_FIX_QUALITY = 1
GGA_NUM_SATS = 10
GGA_HDOP = 1
GGA_DIFF_AGE = 5


def nmea_checksum(body: str) -> int:
    """
    NMEAチェックサムを計算。

    Args:
        body: "$" と "*" の間の文字列（両端は含まない）

    Returns:
        全文字のXOR（0-255）
    """
    checksum = 0
    for char in body:
        checksum ^= ord(char)
    return checksum & 0xFF


def decimal_to_nmea_deg(value: float, is_lat: bool) -> Tuple[str, str]:
    """
    10進数度をNMEA形式（DDMM.MMMM / DDDMM.MMMM）に変換。

    Args:
        value: 10進数度
        is_lat: 緯度ならTrue（度は2桁）、経度ならFalse（度は3桁）

    Returns:
        (NMEA形式の値, 方向 N/S/E/W)
    """
    if is_lat:
        direction = "N" if value >= 0 else "S"
    else:
        direction = "E" if value >= 0 else "W"

    degree = abs(value)
    whole = int(degree)
    minutes = round((degree - whole) * 60.0, 4)
    # 59.99995分以上は丸めで60.0000になるので度に繰り上げ
    if minutes >= 60.0:
        whole += 1
        minutes -= 60.0

    deg_len = 2 if is_lat else 3
    return f"{whole:0{deg_len}d}{minutes:07.4f}", direction


def nmea_deg_to_decimal(value: str, direction: str) -> Optional[float]:
    """
    NMEA形式（DDMM.MMMM / DDDMM.MMMM）の値を10進数度に変換。

    小数点の直前2桁を分、それより前を度として扱う。

    Args:
        value: NMEA形式の値（例: "3538.92590151"）
        direction: 方向（N/S/E/W）

    Returns:
        10進数度、または変換失敗時はNone
    """
    whole, dot, _ = value.partition(".")
    if not dot or len(whole) < 3 or direction not in ("N", "S", "E", "W"):
        return None
    try:
        degrees = int(whole[:-2])
        minutes = float(value[len(whole) - 2:])
    except ValueError:
        return None
    decimal = degrees + minutes / 60.0
    return -decimal if direction in ("S", "W") else decimal


def build_gga(fix: Optional[GgaFix]) -> str:
    """
    測位結果からNMEA GGA文を生成。

    測位前（fix=None）は空文字列を返す。

    フォーマット:
        $GPGGA,hhmmss,DDMM.MMMM,N,DDDMM.MMMM,E,1,10,1,<高度>,M,<高度>,M,5,*<チェックサム>
    """
    if fix is None:
        return ""

    timestamp = fix.timestamp
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc)

    lat, lat_dir = decimal_to_nmea_deg(fix.lat, is_lat=True)
    lon, lon_dir = decimal_to_nmea_deg(fix.lon, is_lat=False)

    body = (
        f"GPGGA,{timestamp.strftime('%H%M%S')},"
        f"{lat},{lat_dir},{lon},{lon_dir},"
        f"{GGA_FIX_QUALITY},{GGA_NUM_SATS},{GGA_HDOP},"
        f"{fix.alt:.1f},M,{fix.alt:.1f},M,{GGA_DIFF_AGE},"
    )
    return f"${body}*{nmea_checksum(body):02X}"


def format_gga_line(sentence: str) -> bytes:
    """送信用にCRLFを付加してエンコード"""
    return (sentence + "\r\n").encode("ascii", errors="ignore")


def verify_checksum(sentence: str) -> bool:
    """"$...*hh" 形式の文のチェックサムを検証"""
    if not sentence.startswith("$") or "*" not in sentence:
        return False
    body, _, given = sentence[1:].rpartition("*")
    try:
        return nmea_checksum(body) == int(given.strip()[:2], 16)
    except ValueError:
        return False


def _field(parts, index: int, cast):
    """欠損・変換不能なフィールドはNone"""
    if index >= len(parts) or not parts[index]:
        return None
    try:
        return cast(parts[index])
    except ValueError:
        return None


def parse_gga(sentence: str) -> Optional[GGAData]:
    """
    受信機が出力したGGA文をパース。

    トーカーID（GP/GN/GL等）は問わない。チェックサム部は取り除くだけで検証しない。

    Args:
        sentence: "$xxGGA,..." 形式の1行

    Returns:
        GGAData、GGA文でなければNone
    """
    sentence = sentence.strip()
    if not sentence.startswith("$"):
        return None
    payload = sentence[1:].split("*", 1)[0]
    parts = payload.split(",")
    if len(parts[0]) != 5 or not parts[0].endswith("GGA") or len(parts) < 14:
        return None

    return GGAData(
        lat=nmea_deg_to_decimal(parts[2], parts[3]),
        lon=nmea_deg_to_decimal(parts[4], parts[5]),
        alt=_field(parts, 9, float),
        utc_time=parts[1] or None,
        quality=_field(parts, 6, int),
        num_sats=_field(parts, 7, int),
        hdop=_field(parts, 8, float),
        diff_age=_field(parts, 13, float),
        ref_station_id=_field(parts, 14, str),
        timestamp=time.time(),
        raw=sentence,
    )
