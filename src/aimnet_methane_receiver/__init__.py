from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .calibration import CalibrationProfile
from .config import (
    DEVICE_NAME_PREFIX,
    PREPARATION_DELAY_SECONDS,
    READ_FALLBACK_INTERVAL_SECONDS,
    SIGNAL_TIMEOUT_SECONDS,
    MonitorConfig,
)
from .data_recorder import SessionStore
from .runtime import MonitorRuntime, run

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aimnet-methane-receiver",
        description="AIMNet ガスセンサーから BLE でテレメトリを受信してブラウザモニター表示、またはCSVを標準出力へ流します。",
    )
    parser.add_argument(
        "--address", help="接続するデバイスの BLE アドレス（未指定で最初に見つかったセンサー）"
    )
    parser.add_argument(
        "--name-prefix",
        default=DEVICE_NAME_PREFIX,
        help="スキャンで受け付けるデバイス名の接頭辞（空文字で全デバイス）",
    )
    parser.add_argument(
        "--scan-timeout",
        type=float,
        default=None,
        help="スキャンのタイムアウト秒数（未指定で手動停止まで継続）",
    )
    parser.add_argument(
        "--warmup",
        type=float,
        default=PREPARATION_DELAY_SECONDS,
        help=f"接続後のセンサーウォームアップ秒数（既定: {PREPARATION_DELAY_SECONDS:g}、0で省略）",
    )
    parser.add_argument(
        "--signal-timeout",
        type=float,
        default=SIGNAL_TIMEOUT_SECONDS,
        help=f"受信が途絶えてから信号タイムアウトとみなす秒数（既定: {SIGNAL_TIMEOUT_SECONDS:g}）",
    )
    parser.add_argument(
        "--max-signal-timeout",
        type=float,
        default=None,
        help="信号タイムアウトがこの秒数続いたら切断（未指定で無制限）",
    )
    parser.add_argument(
        "--read-interval",
        type=float,
        default=READ_FALLBACK_INTERVAL_SECONDS,
        help=f"通知できない特性のポーリング間隔秒数（既定: {READ_FALLBACK_INTERVAL_SECONDS:g}）",
    )
    parser.add_argument(
        "--gas-byte-order",
        choices=["big", "little"],
        default="big",
        help="バイナリガス特性のバイトオーダー（既定: big）",
    )

    # 校正パラメータ: raw = slope * ppm + intercept
    parser.add_argument("--slope", type=float, default=1.0, help="校正の傾き（raw/ppm）")
    parser.add_argument("--intercept", type=float, default=0.0, help="校正の切片（0 ppm時のraw値）")
    parser.add_argument("--min-ppm", type=float, default=0.0, help="ppm の下限クランプ")
    parser.add_argument("--max-ppm", type=float, default=None, help="ppm の上限クランプ（未指定で無制限）")

    parser.add_argument(
        "--data-dir",
        type=Path,
        default=Path.cwd() / "aimnet_data",
        help="セッション履歴とエクスポートの保存先（既定: ./aimnet_data）",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=[
            "CRITICAL",
            "ERROR",
            "WARNING",
            "INFO",
            "DEBUG",
            "NOTSET",
        ],
        help="ログレベル（既定: WARNING）",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="ログをファイルにも出力（既定: 標準エラーのみ）",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8050,
        help="モニターサーバーポート（既定: 8050）",
    )
    parser.add_argument(
        "--mock",
        action="store_true",
        help="テスト用のMockセンサーを使用（BLEデバイス不要）",
    )

    # CSV出力モードのオプション（デフォルトはブラウザモニター）
    parser.add_argument(
        "--csv",
        action="store_true",
        help="CSV出力モード（標準出力へCSVを流す）",
    )
    parser.add_argument(
        "--no-header",
        action="store_true",
        help="先頭にヘッダ行を出力しない（CSV出力モード時のみ有効）",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> MonitorConfig:
    return MonitorConfig(
        device_name_prefix=args.name_prefix,
        scan_timeout=args.scan_timeout,
        warmup_seconds=max(0.0, args.warmup),
        signal_timeout_seconds=args.signal_timeout,
        max_signal_timeout_seconds=args.max_signal_timeout,
        read_fallback_interval_seconds=args.read_interval,
        gas_byte_order=args.gas_byte_order,
        calibration=CalibrationProfile(
            slope_raw_per_ppm=args.slope,
            intercept_raw=args.intercept,
            minimum_ppm=args.min_ppm,
            maximum_ppm=args.max_ppm,
        ),
        data_dir=args.data_dir,
    )


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    # ロギング初期化（CSV出力時はstdout、ログはstderr/ファイルへ）
    level = getattr(logging, str(args.log_level).upper(), logging.WARNING)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if args.log_file:
        try:
            handlers.append(logging.FileHandler(args.log_file, encoding="utf-8"))
        except OSError as e:
            # ファイルハンドラに失敗しても実行は継続（stderrにだけ出す）
            print(f"Cannot open log file {args.log_file}: {e}", file=sys.stderr)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,  # 他のbasicConfigに影響されないよう強制
    )

    config = config_from_args(args)
    try:
        store = SessionStore(config.data_dir)
    except OSError as e:
        logger.error(f"❌ Cannot use data directory {config.data_dir}: {e}")
        raise SystemExit(1)

    if args.csv:
        # CSV出力モード
        code = run(
            config,
            address=args.address,
            show_header=not args.no_header,
            mock=args.mock,
            recorder=store,
        )
        raise SystemExit(code)

    # デフォルト: ブラウザモニターモード
    from .dashboard import create_app

    logger.info("🔧 AIMNet Gas Monitor")
    logger.info("=" * 50)
    logger.info("🌐 Starting web interface...")
    logger.info(f"⏳ Sensors warm up for {config.warmup_seconds:g}s after connecting")
    logger.info(f"🔍 Open http://localhost:{args.port} in your browser")
    logger.info("=" * 50)
    if args.mock:
        logger.info("🔧 Using mock sensor for testing (no BLE device required)")

    runtime = MonitorRuntime(
        config, store, mock=args.mock, address=args.address
    )
    try:
        app = create_app(runtime, store)
        try:
            app.run(host="0.0.0.0", port=args.port)
        except KeyboardInterrupt:
            logger.info("\n🛑 Shutting down monitor...")
        logger.info("🏁 Monitor stopped")
    except RuntimeError as e:
        logger.error(f"❌ Failed to start monitor: {e}")
        logger.info("💡 Troubleshooting tips:")
        logger.info("   - Check Bluetooth is enabled on this computer")
        logger.info("   - Check the sensor is powered on and advertising as 'AIMNet...'")
        logger.info("   - Use --mock option for testing without a device")
        raise SystemExit(1)
