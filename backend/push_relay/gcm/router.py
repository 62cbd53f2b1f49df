# backend/push_relay/gcm/router.py

"""
GCM 送信用の FastAPI ルーター定義。

- POST /gcm/send
- POST /gcm/registrations/validate
"""

from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, status

from .errors import (
    GcmDeliveryCancelled,
    GcmInternalError,
    GcmInvalidRequestError,
    GcmProtocolError,
    GcmUnavailableError,
)
from .schemas import (
    DeliveryReport,
    DeliveryStatus,
    RegistrationCheckRequest,
    RegistrationCheckResponse,
    SendRequest,
    SendResponse,
)
from .service import GcmService, build_gcm_service

router = APIRouter(prefix="/gcm", tags=["gcm"])

_STATUS_CODES = {
    DeliveryStatus.PROTOCOL_ERROR: status.HTTP_502_BAD_GATEWAY,
    DeliveryStatus.EXHAUSTED: status.HTTP_503_SERVICE_UNAVAILABLE,
    DeliveryStatus.CANCELLED: status.HTTP_504_GATEWAY_TIMEOUT,
    DeliveryStatus.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@lru_cache()
def get_gcm_service() -> GcmService:
    """
    GcmService のシングルトンインスタンスを取得する。

    NOTE:
    - GCM_API_KEY などは環境変数から読む（push_relay.gcm.config）。
    - テストでは dependency_overrides で差し替える。
    """
    return build_gcm_service()


def _raise_for_report(report: DeliveryReport) -> None:
    if report.is_completed:
        return

    error = report.error
    detail = {
        "status": report.status.value,
        "message": error.message if error else report.status.value,
        "attempts": report.attempts,
    }
    if error is not None and error.status_code is not None:
        detail["gateway_status_code"] = error.status_code
        detail["gateway_body"] = error.body

    raise HTTPException(status_code=_STATUS_CODES[report.status], detail=detail)


@router.post(
    "/send",
    response_model=SendResponse,
    summary="複数の登録 ID へプッシュ通知を送信する",
)
def send_message(
    body: SendRequest,
    service: GcmService = Depends(get_gcm_service),
) -> SendResponse:
    """
    GCM へマルチキャスト送信し、受信者ごとの結果を入力順で返す。

    - GCM がリクエストを拒否 / 不正な応答 → 502
    - GCM に一度も到達できない → 503
    - キャンセル / 期限切れ → 504
    - 結果の整合性エラー → 500
    - 受信者単位の失敗（InvalidRegistration 等）は 200 の results に含まれる
    """
    try:
        report = service.send_multicast(body.message, body.registration_ids, body.retries)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    _raise_for_report(report)
    return SendResponse.from_report(report)


@router.post(
    "/registrations/validate",
    response_model=RegistrationCheckResponse,
    summary="登録 ID が有効かどうかを dry-run で確認する",
)
def validate_registration(
    body: RegistrationCheckRequest,
    service: GcmService = Depends(get_gcm_service),
) -> RegistrationCheckResponse:
    """
    dry-run の空メッセージを送って登録 ID の有効性を返す。
    """
    try:
        valid = service.is_registration_valid(body.registration_id)
    except GcmUnavailableError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc
    except (GcmInvalidRequestError, GcmProtocolError) as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(exc),
        ) from exc
    except GcmDeliveryCancelled as exc:
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail=str(exc),
        ) from exc
    except GcmInternalError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc

    return RegistrationCheckResponse(registration_id=body.registration_id, valid=valid)
