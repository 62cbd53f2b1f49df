# backend/push_relay/gcm/config.py

"""
GCM 連携に必要な設定値をまとめるモジュール。
"""

from dataclasses import dataclass

from push_relay.utils.config import get_env, get_env_int

from .constants import GCM_SEND_ENDPOINT


@dataclass(frozen=True)
class GcmSettings:
    """
    GCM 送信 API 関連の設定値。

    api_key はログに出さないこと。
    """

    api_key: str
    send_endpoint: str = GCM_SEND_ENDPOINT
    timeout_seconds: int = 10
    default_retries: int = 5
    backoff_initial_delay_ms: int = 1000
    backoff_max_delay_ms: int = 1024000


def get_gcm_settings() -> GcmSettings:
    """
    GCM 設定値を環境変数から読み出す。

    必須:
      - GCM_API_KEY

    任意:
      - GCM_SEND_ENDPOINT（デフォルト https://android.googleapis.com/gcm/send）
      - GCM_TIMEOUT_SECONDS（デフォルト 10秒）
      - GCM_DEFAULT_RETRIES（デフォルト 5回）
      - GCM_BACKOFF_INITIAL_DELAY_MS（デフォルト 1000ms）
      - GCM_BACKOFF_MAX_DELAY_MS（デフォルト 1024000ms）
    """
    api_key = get_env("GCM_API_KEY")
    send_endpoint = get_env(
        "GCM_SEND_ENDPOINT",
        default=GCM_SEND_ENDPOINT,
        required=False,
    )

    return GcmSettings(
        api_key=api_key,
        send_endpoint=send_endpoint,
        timeout_seconds=get_env_int("GCM_TIMEOUT_SECONDS", default=10),
        default_retries=get_env_int("GCM_DEFAULT_RETRIES", default=5),
        backoff_initial_delay_ms=get_env_int(
            "GCM_BACKOFF_INITIAL_DELAY_MS",
            default=1000,
        ),
        backoff_max_delay_ms=get_env_int(
            "GCM_BACKOFF_MAX_DELAY_MS",
            default=1024000,
        ),
    )
