"""
NTRIPキャスター応答パーサー

認証フェーズではHTTP/ICYステータス行を解釈し、ストリーミングフェーズでは
受信バイト列からRTCM3フレームを切り出す。
"""

import logging
import re
from http import HTTPStatus
from typing import Dict, List, Optional, Tuple

from pyrtcm.rtcmhelpers import calc_crc24q

from .types import AuthorizationOutcome

LOGGER = logging.getLogger(__name__)

RTCM3_PREAMBLE = 0xD3
RTCM3_OVERHEAD = 6  # ヘッダー3バイト + CRC3バイト
MAX_HEADER_SIZE = 8192
MAX_DESCRIPTION = 240

ICY_OK = b"ICY 200 OK\r\n"
HEADER_END = b"\r\n\r\n"

_STATUS_LINE = re.compile(r"^(HTTP/\d\.\d|ICY|RTSP/\d\.\d)\s+(\d{3})\s*(.*)$")


def message_type(frame: bytes) -> Optional[int]:
    """RTCM3フレームのメッセージ番号（12ビット）を取得"""
    if len(frame) < 5:
        return None
    return (frame[3] << 4) | (frame[4] >> 4)


def _parse_header_block(head: bytes) -> Tuple[str, Dict[str, str]]:
    lines = head.decode("latin-1").split("\r\n")
    headers = {}
    for line in lines[1:]:
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()
    return lines[0].strip(), headers


def _summarize(body: bytes) -> str:
    text = body.decode("utf-8", errors="replace").strip()
    if len(text) > MAX_DESCRIPTION:
        text = text[:MAX_DESCRIPTION] + "..."
    return text


def _default_reason(status: int) -> Tuple[str, str]:
    try:
        known = HTTPStatus(status)
    except ValueError:
        return "", ""
    return known.phrase, known.description


class NtripResponseParser:
    """
    キャスター応答のインクリメンタルパーサー

    parse_authorization() は1回のハンドシェイクにつき最大1回だけ結果を返す。
    ヘッダー直後に届いたバイト列は保持され、次の parse_rtcm() で処理される。
    """

    def __init__(self):
        self._header = bytearray()
        self._rtcm = bytearray()
        self._outcome: Optional[AuthorizationOutcome] = None
        self.crc_errors = 0
        self.discarded_bytes = 0

    def reset(self):
        """接続ごとにバッファをクリア"""
        self._header.clear()
        self._rtcm.clear()
        self._outcome = None
        self.crc_errors = 0
        self.discarded_bytes = 0

    @property
    def outcome(self) -> Optional[AuthorizationOutcome]:
        return self._outcome

    def parse_authorization(self, data: bytes) -> Optional[AuthorizationOutcome]:
        """
        認証応答をパース。

        Args:
            data: 受信したバイト列（分割されていてもよい）

        Returns:
            認証結果。応答が揃っていない場合、または結果通知済みの場合はNone
        """
        if self._outcome is not None:
            self._rtcm += data
            return None

        self._header += data

        # NTRIP 1.0: "ICY 200 OK" の直後からRTCMデータが始まる
        if self._header.startswith(ICY_OK):
            return self._finish(
                AuthorizationOutcome.success(200, "OK"), bytes(self._header[len(ICY_OK):])
            )

        end = self._header.find(HEADER_END)
        if end < 0:
            if len(self._header) > MAX_HEADER_SIZE:
                return self._finish(
                    AuthorizationOutcome.failure(
                        None,
                        "Malformed response",
                        f"no end of header after {len(self._header)} bytes",
                    ),
                    b"",
                )
            return None

        head = bytes(self._header[:end])
        body = bytes(self._header[end + len(HEADER_END):])
        status_line, headers = _parse_header_block(head)

        if status_line.startswith("SOURCETABLE"):
            return self._finish(self._sourcetable_failure(body), b"")

        match = _STATUS_LINE.match(status_line)
        if not match:
            return self._finish(
                AuthorizationOutcome.failure(None, "Malformed response", status_line[:80]),
                b"",
            )

        status = int(match.group(2))
        phrase, status_description = _default_reason(status)
        reason = match.group(3).strip() or phrase

        if status == 200:
            if "gnss/sourcetable" in headers.get("content-type", "").lower():
                return self._finish(self._sourcetable_failure(body), b"")
            return self._finish(AuthorizationOutcome.success(status, reason), body)

        description = _summarize(body)
        if not description and status == 401:
            description = headers.get("www-authenticate", "")
        if not description:
            description = status_description
        return self._finish(AuthorizationOutcome.failure(status, reason, description), b"")

    def parse_rtcm(self, data: bytes) -> List[bytes]:
        """
        RTCM3フレームを切り出す。

        Args:
            data: 受信したバイト列

        Returns:
            CRC検証済みのRTCM3フレーム（0個以上、到着順）
        """
        self._rtcm += data
        buf = self._rtcm
        frames = []
        pos = 0
        while True:
            start = buf.find(RTCM3_PREAMBLE, pos)
            if start < 0:
                self.discarded_bytes += len(buf) - pos
                pos = len(buf)
                break
            self.discarded_bytes += start - pos
            if len(buf) - start < 3:
                pos = start
                break
            # プリアンブル後の6ビットは予約（0固定）
            if buf[start + 1] & 0xFC:
                self.discarded_bytes += 1
                pos = start + 1
                continue
            length = ((buf[start + 1] & 0x03) << 8) | buf[start + 2]
            total = length + RTCM3_OVERHEAD
            if len(buf) - start < total:
                pos = start
                break
            frame = bytes(buf[start:start + total])
            if calc_crc24q(frame) == 0:
                frames.append(frame)
                pos = start + total
            else:
                self.crc_errors += 1
                self.discarded_bytes += 1
                LOGGER.debug("RTCM CRC mismatch at offset %d (length %d)", start, length)
                pos = start + 1
        del buf[:pos]
        return frames

    def _finish(self, outcome: AuthorizationOutcome, remainder: bytes) -> AuthorizationOutcome:
        self._outcome = outcome
        self._header.clear()
        if outcome.ok:
            self._rtcm += remainder
        return outcome

    @staticmethod
    def _sourcetable_failure(body: bytes) -> AuthorizationOutcome:
        # マウントポイントが存在しない場合、キャスターはソーステーブルを返す
        lines = body.decode("utf-8", errors="replace").splitlines()
        return AuthorizationOutcome.failure(
            404, "Mountpoint not found", _summarize("\n".join(lines[:3]).encode())
        )
