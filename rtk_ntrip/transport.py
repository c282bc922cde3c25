"""
NTRIP用TCPトランスポート

asyncioイベントループのソケット監視（add_reader/add_writer）で
open/readable/writable/error/closed の各イベントをリスナーへ通知する。
"""

import errno
import logging
import socket
from typing import Optional, Protocol, Tuple

LOGGER = logging.getLogger(__name__)

READ_SIZE = 4096

Address = Tuple[int, int, int, str, tuple]


class NtripError(Exception):
    """NTRIPクライアントの基底例外"""


class ResolutionError(NtripError):
    """ホスト名を解決できない"""


class TransportListener(Protocol):
    """トランスポートイベントの受け手"""

    def on_open(self) -> None: ...

    def on_open_failed(self, exc: BaseException) -> None: ...

    def on_writable(self) -> None: ...

    def on_readable(self, data: bytes) -> None: ...

    def on_error(self, exc: BaseException) -> None: ...

    def on_closed(self) -> None: ...


def resolve_host(host: str, port: int) -> Address:
    """
    ホスト名を解決。

    Args:
        host: ホスト名/IP
        port: ポート番号

    Returns:
        getaddrinfo() の最初の結果

    Raises:
        ResolutionError: 解決できない場合
    """
    try:
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as exc:
        raise ResolutionError(str(exc)) from exc
    if not infos:
        raise ResolutionError(f"no address for {host}")
    return infos[0]


class TcpTransport:
    """ノンブロッキングTCPストリーム（1接続につき1インスタンス）"""

    def __init__(self, loop, address: Address, listener: TransportListener, read_size: int = READ_SIZE):
        """
        Args:
            loop: asyncioイベントループ
            address: resolve_host() の戻り値
            listener: イベント通知先
            read_size: 1回の読み取りサイズ
        """
        self._loop = loop
        self._address = address
        self._listener = listener
        self._read_size = read_size
        self._sock: Optional[socket.socket] = None
        self._out = bytearray()
        self._opened = False
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self):
        """接続を開始（結果はon_open/on_open_failedで通知）"""
        family, _, proto, _, sockaddr = self._address
        try:
            sock = socket.socket(family, socket.SOCK_STREAM, proto)
        except OSError as exc:
            self._loop.call_soon(self._fail_open, exc)
            return
        sock.setblocking(False)
        self._sock = sock
        err = sock.connect_ex(sockaddr)
        if err not in (0, errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EAGAIN):
            self._loop.call_soon(self._fail_open, OSError(err, errno.errorcode.get(err, str(err))))
            return
        LOGGER.debug("connecting to %s", sockaddr)
        self._loop.add_writer(sock.fileno(), self._on_connect_ready)

    def write(self, data: bytes):
        """
        データを送信（送り切れない分はバッファし、書き込み可能時に送る）

        Raises:
            OSError: 送信エラー
        """
        if self._closed or self._sock is None:
            raise OSError(errno.ENOTCONN, "transport is not connected")
        if self._out:
            self._out += data
            return
        try:
            sent = self._sock.send(data)
        except (BlockingIOError, InterruptedError):
            sent = 0
        if sent < len(data):
            self._out += data[sent:]
            self._loop.add_writer(self._sock.fileno(), self._on_write_ready)

    def close(self):
        """接続を閉じる（以降イベントは通知されない）"""
        if self._closed:
            return
        self._closed = True
        self._out.clear()
        if self._sock is not None:
            fd = self._sock.fileno()
            if fd >= 0:
                self._loop.remove_reader(fd)
                self._loop.remove_writer(fd)
            self._sock.close()
            self._sock = None

    def _on_connect_ready(self):
        if self._closed:
            return
        fd = self._sock.fileno()
        self._loop.remove_writer(fd)
        err = self._sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        if err:
            self._fail_open(OSError(err, errno.errorcode.get(err, str(err))))
            return
        self._opened = True
        self._loop.add_reader(fd, self._on_read_ready)
        self._listener.on_open()
        if not self._closed:
            self._listener.on_writable()

    def _on_read_ready(self):
        if self._closed:
            return
        try:
            data = self._sock.recv(self._read_size)
        except (BlockingIOError, InterruptedError):
            return
        except OSError as exc:
            self._fail(exc)
            return
        if not data:
            self.close()
            self._listener.on_closed()
            return
        self._listener.on_readable(data)

    def _on_write_ready(self):
        if self._closed:
            return
        try:
            sent = self._sock.send(self._out)
        except (BlockingIOError, InterruptedError):
            return
        except OSError as exc:
            self._fail(exc)
            return
        del self._out[:sent]
        if not self._out:
            self._loop.remove_writer(self._sock.fileno())
            self._listener.on_writable()

    def _fail_open(self, exc: BaseException):
        if self._closed:
            return
        self.close()
        self._listener.on_open_failed(exc)

    def _fail(self, exc: BaseException):
        if self._closed:
            return
        self.close()
        self._listener.on_error(exc)
