# backend/push_relay/gcm/constants.py

"""
GCM HTTP エンドポイントで使う定数群。

- 送信先 URL
- リクエスト / レスポンス JSON のフィールド名
- 受信者ごとのエラーコード語彙
"""

GCM_SEND_ENDPOINT = "https://android.googleapis.com/gcm/send"

# ---- リクエストパラメータ ---------------------------------------------

PARAM_COLLAPSE_KEY = "collapse_key"
PARAM_DELAY_WHILE_IDLE = "delay_while_idle"
PARAM_DRY_RUN = "dry_run"
PARAM_RESTRICTED_PACKAGE_NAME = "restricted_package_name"
PARAM_TIME_TO_LIVE = "time_to_live"
PARAM_PRIORITY = "priority"

MESSAGE_PRIORITY_NORMAL = "normal"
MESSAGE_PRIORITY_HIGH = "high"

# time_to_live の上限（4週間, 秒）
MAX_TIME_TO_LIVE_SECONDS = 4 * 7 * 24 * 60 * 60

JSON_REGISTRATION_IDS = "registration_ids"
JSON_PAYLOAD = "data"
JSON_NOTIFICATION = "notification"
JSON_NOTIFICATION_TITLE = "title"
JSON_NOTIFICATION_BODY = "body"
JSON_NOTIFICATION_ICON = "icon"
JSON_NOTIFICATION_SOUND = "sound"
JSON_NOTIFICATION_BADGE = "badge"
JSON_NOTIFICATION_TAG = "tag"
JSON_NOTIFICATION_COLOR = "color"
JSON_NOTIFICATION_CLICK_ACTION = "click_action"
JSON_NOTIFICATION_BODY_LOC_KEY = "body_loc_key"
JSON_NOTIFICATION_BODY_LOC_ARGS = "body_loc_args"
JSON_NOTIFICATION_TITLE_LOC_KEY = "title_loc_key"
JSON_NOTIFICATION_TITLE_LOC_ARGS = "title_loc_args"

# ---- レスポンスフィールド ---------------------------------------------

JSON_SUCCESS = "success"
JSON_FAILURE = "failure"
JSON_CANONICAL_IDS = "canonical_ids"
JSON_MULTICAST_ID = "multicast_id"
JSON_RESULTS = "results"
JSON_ERROR = "error"
JSON_MESSAGE_ID = "message_id"
TOKEN_CANONICAL_REG_ID = "registration_id"

# ---- 受信者ごとのエラーコード -----------------------------------------

ERROR_QUOTA_EXCEEDED = "QuotaExceeded"
ERROR_DEVICE_QUOTA_EXCEEDED = "DeviceQuotaExceeded"
ERROR_MISSING_REGISTRATION = "MissingRegistration"
ERROR_INVALID_REGISTRATION = "InvalidRegistration"
ERROR_MISMATCH_SENDER_ID = "MismatchSenderId"
ERROR_NOT_REGISTERED = "NotRegistered"
ERROR_MESSAGE_TOO_BIG = "MessageTooBig"
ERROR_MISSING_COLLAPSE_KEY = "MissingCollapseKey"
ERROR_UNAVAILABLE = "Unavailable"
ERROR_INTERNAL_SERVER_ERROR = "InternalServerError"
ERROR_INVALID_TTL = "InvalidTtl"

# 次のラウンドで再送してよいエラー。これ以外（未知のコード含む）は確定扱い。
RETRIABLE_ERRORS = frozenset({ERROR_UNAVAILABLE, ERROR_INTERNAL_SERVER_ERROR})

# 登録 ID 検証（dry-run）で使うリトライ回数
REGISTRATION_CHECK_RETRIES = 5
