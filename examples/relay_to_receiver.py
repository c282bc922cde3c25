#!/usr/bin/env python3
"""
NTRIP補正データを受信機へ中継するサンプル

キャスターから受信したRTCMをシリアル接続の受信機へ書き込み、
受信機のGGA出力から現在位置をキャスターへ送信する。

使用方法:
    python relay_to_receiver.py --port /dev/ttyUSB0 \
        --ntrip-host rtk.example.com --ntrip-port 2101 \
        --ntrip-mount RTCM3 --ntrip-user user --ntrip-pass pass --send-position
"""

import argparse
import logging
import sys
import time

# ライブラリのパスを追加（開発時用）
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from rtk_ntrip import ConnectionConfig, GnssReceiver, NtripClient, ReconnectPolicy
from rtk_ntrip.logging_utils import setup_logging


def main():
    parser = argparse.ArgumentParser(description="NTRIP → 受信機 中継サンプル")
    parser.add_argument("--port", default="/dev/ttyUSB0", help="シリアルポート")
    parser.add_argument("--baud", type=int, default=115200, help="ボーレート")
    parser.add_argument("--ntrip-host", required=True, help="NTRIPキャスターホスト")
    parser.add_argument("--ntrip-port", default="2101", help="NTRIPポート")
    parser.add_argument("--ntrip-mount", default="", help="NTRIPマウントポイント")
    parser.add_argument("--ntrip-user", default="", help="NTRIPユーザ名")
    parser.add_argument("--ntrip-pass", default="", help="NTRIPパスワード")
    parser.add_argument("--send-position", action="store_true", help="GGAで位置を送信")
    parser.add_argument("--gga-interval", type=float, default=5.0, help="GGA送信間隔（秒）")
    parser.add_argument("--max-retries", type=int, help="再接続の最大回数（省略時は無制限）")
    parser.add_argument("--log-file", help="ログファイル")
    parser.add_argument("--verbose", "-v", action="store_true", help="デバッグログを表示")
    args = parser.parse_args()

    setup_logging(logging.DEBUG if args.verbose else logging.INFO, args.log_file)

    # マウントポイントの先頭"/"は呼び出し側で補完する
    mountpoint = args.ntrip_mount
    if mountpoint and not mountpoint.startswith("/"):
        mountpoint = "/" + mountpoint

    config = ConnectionConfig.from_strings(
        server=args.ntrip_host,
        port=args.ntrip_port,
        mountpoint=mountpoint,
        send_position=args.send_position,
        username=args.ntrip_user,
        password=args.ntrip_pass,
    )

    receiver = GnssReceiver(args.port, args.baud)
    client = NtripClient(
        sink=receiver,
        position_source=receiver,
        on_error=lambda message: print(f"[NTRIP] {message}", file=sys.stderr),
        gga_interval=args.gga_interval,
        reconnect_policy=ReconnectPolicy(max_attempts=args.max_retries, backoff=1.0),
    )

    try:
        receiver.start()
        client.connect(config)
        print(f"[NTRIP] Connecting to {config.description}... (Ctrl+C to stop)", file=sys.stderr)

        while True:
            fix = receiver.current_fix()
            position = f"{fix.lat:.8f}, {fix.lon:.8f}" if fix else "no fix"
            print(
                f"[{client.state.value}] RTCM: {receiver.get_rtcm_messages()} msgs "
                f"{receiver.get_rtcm_bytes()} bytes  Position: {position}",
                file=sys.stderr,
            )
            time.sleep(1)

    except KeyboardInterrupt:
        print("\nStopping...", file=sys.stderr)
    finally:
        client.stop()
        receiver.stop()


if __name__ == "__main__":
    main()
