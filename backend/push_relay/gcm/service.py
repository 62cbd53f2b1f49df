# backend/push_relay/gcm/service.py

"""
GCM マルチキャスト送信のサービス層（リトライループ本体）。

責務:
- GcmClient で 1ラウンドずつ送信する
- 受信者ごとの結果を LedgerState にマージし、再送が必要な ID だけを次ラウンドに回す
- ラウンド間は指数バックオフ＋ジッターで待機する（キャンセル可能）
- 最後に呼び出し元の順序で DeliveryResult を組み立てる

ラウンドは必ず直列に実行する。LedgerState は 1回の呼び出しの中だけで使い、
複数の呼び出しで共有しない。
"""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Callable, List, Optional, Sequence

from .backoff import BackoffPolicy, Sleeper
from .client import GcmClient, RoundStatus
from .config import GcmSettings, get_gcm_settings
from .constants import REGISTRATION_CHECK_RETRIES
from .errors import (
    GcmClientError,
    GcmInternalError,
    GcmInvalidRequestError,
    GcmProtocolError,
    LedgerConsistencyError,
)
from .ledger import LedgerState, aggregate, merge_round
from .schemas import (
    DeliveryFailure,
    DeliveryReport,
    DeliveryRequest,
    DeliveryStatus,
    Message,
    RecipientResult,
)

logger = logging.getLogger(__name__)


class GcmService:
    """
    GCM への送信をまとめるサービス層。

    - send_multicast: 複数の登録 ID にまとめて送信（リトライ込み）
    - send / send_no_retry: 1件だけ送信するファサード
    - is_registration_valid: dry-run で登録 ID の有効性を確認
    """

    def __init__(
        self,
        client: GcmClient,
        *,
        default_retries: int = 5,
        backoff: BackoffPolicy | None = None,
        sleeper: Sleeper | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._default_retries = int(default_retries)
        self._backoff = backoff or BackoffPolicy()
        self._sleeper = sleeper or Sleeper()
        self._rng = rng or random.Random()
        self._clock = clock

    # ---- 内部ヘルパー -------------------------------------------------

    def _deadline_passed(self, deadline: Optional[float]) -> bool:
        return deadline is not None and self._clock() >= deadline

    def _wait(
        self,
        seconds: float,
        cancel_event: Optional[threading.Event],
        deadline: Optional[float],
    ) -> bool:
        """
        バックオフ待機。キャンセルまたは期限到達で False を返す。
        """
        if deadline is not None:
            remaining = deadline - self._clock()
            if remaining < seconds:
                # 期限までは待つが、その後のラウンドは行わない
                self._sleeper.sleep(max(remaining, 0.0), cancel_event)
                return False
        return self._sleeper.sleep(seconds, cancel_event)

    @staticmethod
    def _cancel_reason(cancel_event: Optional[threading.Event]) -> str:
        if cancel_event is not None and cancel_event.is_set():
            return "delivery cancelled by caller"
        return "delivery deadline exceeded"

    @staticmethod
    def _failure_from_error(error: Optional[GcmClientError]) -> DeliveryFailure:
        if isinstance(error, GcmInvalidRequestError):
            return DeliveryFailure(
                message=str(error),
                status_code=error.status_code,
                body=error.body,
            )
        if isinstance(error, GcmProtocolError):
            return DeliveryFailure(message=str(error), body=error.body)
        return DeliveryFailure(message=str(error) if error else "unknown terminal error")

    # ---- 公開 API ------------------------------------------------------

    def send_multicast(
        self,
        message: Message,
        registration_ids: Sequence[str],
        retries: Optional[int] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
        timeout_seconds: Optional[float] = None,
    ) -> DeliveryReport:
        """
        複数の登録 ID にメッセージを送信し、必要に応じて再送する。

        - 応答なし（接続エラー等）のラウンドはまるごと再送
        - Unavailable / InternalServerError の ID だけを次ラウンドで再送
        - GCM が 200 以外を返した / 本文が不正 → その場で PROTOCOL_ERROR
        - 一度も応答を得られないまま retries を使い切った → EXHAUSTED
        - cancel_event のセット / timeout_seconds の経過 → CANCELLED

        :param retries: 1回目に加えて再送してよい回数。None なら default_retries。
        :raises ValueError: registration_ids が空の場合
        """
        if not registration_ids:
            raise ValueError("registration_ids must not be empty")

        request = DeliveryRequest(message=message, registration_ids=list(registration_ids))
        retries = self._default_retries if retries is None else int(retries)
        deadline = None if timeout_seconds is None else self._clock() + timeout_seconds

        state = LedgerState.initial(request.registration_ids)
        multicast_ids: List[int] = []
        attempt = 0

        while True:
            if (cancel_event is not None and cancel_event.is_set()) or self._deadline_passed(deadline):
                return self._cancelled(attempt, state, cancel_event)

            attempt += 1
            logger.debug(
                "Attempt #%d to send message %s to regIds %s",
                attempt,
                request.message,
                list(state.pending),
            )
            round_result = self._client.send_no_retry(request.message, state.pending)

            if round_result.status == RoundStatus.TERMINAL:
                logger.warning(
                    "GCM rejected attempt #%d, aborting: %s", attempt, round_result.reason
                )
                return DeliveryReport(
                    status=DeliveryStatus.PROTOCOL_ERROR,
                    attempts=attempt,
                    error=self._failure_from_error(round_result.error),
                )

            if round_result.status == RoundStatus.INDETERMINATE:
                logger.info("No response from GCM on attempt #%d: %s", attempt, round_result.reason)
                try_again = attempt <= retries
            else:
                outcome = round_result.outcome
                logger.debug("multicast_id on attempt #%d: %d", attempt, outcome.multicast_id)
                multicast_ids.append(outcome.multicast_id)
                try:
                    state = merge_round(state, outcome)
                except LedgerConsistencyError as exc:
                    logger.error("Inconsistent GCM response on attempt #%d: %s", attempt, exc)
                    return DeliveryReport(
                        status=DeliveryStatus.INTERNAL_ERROR,
                        attempts=attempt,
                        error=DeliveryFailure(message=str(exc)),
                    )
                try_again = bool(state.pending) and attempt <= retries

            if not try_again:
                break

            delay_ms = self._backoff.delay_for_attempt(attempt)
            sleep_ms = self._backoff.jittered_ms(delay_ms, self._rng)
            logger.debug("Sleeping %d ms before attempt #%d", sleep_ms, attempt + 1)
            if not self._wait(sleep_ms / 1000.0, cancel_event, deadline):
                return self._cancelled(attempt, state, cancel_event)

        if not multicast_ids:
            # すべてのラウンドが応答なしだった
            logger.warning("Could not post JSON requests to GCM after %d attempts", attempt)
            return DeliveryReport(
                status=DeliveryStatus.EXHAUSTED,
                attempts=attempt,
                error=DeliveryFailure(
                    message=f"GCM gateway unreachable after {attempt} attempts"
                ),
            )

        if state.pending:
            logger.info(
                "Retries exhausted with %d recipients still unavailable", len(state.pending)
            )

        try:
            result = aggregate(request.registration_ids, state, multicast_ids)
        except LedgerConsistencyError as exc:
            return DeliveryReport(
                status=DeliveryStatus.INTERNAL_ERROR,
                attempts=attempt,
                error=DeliveryFailure(message=str(exc)),
            )

        return DeliveryReport(
            status=DeliveryStatus.COMPLETED,
            attempts=attempt,
            result=result,
            pending_registration_ids=list(state.pending),
        )

    def _cancelled(
        self,
        attempt: int,
        state: LedgerState,
        cancel_event: Optional[threading.Event],
    ) -> DeliveryReport:
        reason = self._cancel_reason(cancel_event)
        logger.warning("GCM delivery aborted after %d attempts: %s", attempt, reason)
        return DeliveryReport(
            status=DeliveryStatus.CANCELLED,
            attempts=attempt,
            error=DeliveryFailure(message=reason),
            pending_registration_ids=list(state.pending),
        )

    def send(
        self,
        message: Message,
        registration_id: str,
        retries: Optional[int] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
        timeout_seconds: Optional[float] = None,
    ) -> RecipientResult:
        """
        1件の登録 ID に送信し、その結果を返す。

        :raises GcmClientError: 送信自体が失敗した場合（EXHAUSTED / PROTOCOL_ERROR など）
        :raises GcmInternalError: 結果が 1件でなかった場合
        """
        if not registration_id:
            raise ValueError("registration_id must not be empty")

        report = self.send_multicast(
            message,
            [registration_id],
            retries,
            cancel_event=cancel_event,
            timeout_seconds=timeout_seconds,
        )
        report.raise_for_error()

        results = report.result.results
        if len(results) != 1:
            raise GcmInternalError(
                f"Found {len(results)} results in single multicast request, expected one"
            )
        return results[0]

    def send_no_retry(self, message: Message, registration_id: str) -> RecipientResult:
        """再送なしで 1件送信する。"""
        return self.send(message, registration_id, retries=0)

    def is_registration_valid(
        self,
        registration_id: str,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> bool:
        """
        dry-run の空メッセージを送り、登録 ID が有効かどうかを返す。

        InvalidRegistration のときだけ False。それ以外の確定結果は True。

        :raises GcmUnavailableError: GCM から一度も応答を得られなかった場合
        """
        message = Message(dry_run=True)
        result = self.send(
            message,
            registration_id,
            REGISTRATION_CHECK_RETRIES,
            cancel_event=cancel_event,
        )
        return not result.is_invalid_registration


def build_gcm_service(settings: GcmSettings | None = None) -> GcmService:
    """
    設定値から GcmClient / BackoffPolicy を組み立てて GcmService を返す。
    """
    settings = settings or get_gcm_settings()
    return GcmService(
        client=GcmClient(settings=settings),
        default_retries=settings.default_retries,
        backoff=BackoffPolicy(
            initial_delay_ms=settings.backoff_initial_delay_ms,
            max_delay_ms=settings.backoff_max_delay_ms,
        ),
    )
