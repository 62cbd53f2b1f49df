# backend/tests/test_gcm_service.py

import random
import threading
from typing import Callable, List, Sequence, Union

import httpx
import pytest

from push_relay.gcm.client import GcmClient, RoundResult
from push_relay.gcm.config import GcmSettings
from push_relay.gcm.errors import (
    GcmDeliveryCancelled,
    GcmInternalError,
    GcmInvalidRequestError,
    GcmUnavailableError,
)
from push_relay.gcm.schemas import (
    BatchOutcome,
    DeliveryReport,
    DeliveryResult,
    DeliveryStatus,
    Message,
    RecipientResult,
)
from push_relay.gcm.service import GcmService

Round = Union[RoundResult, Callable[[Sequence[str]], RoundResult]]


class ScriptedClient:
    """
    GcmClient の代わりに、あらかじめ決めたラウンド結果を順に返すテスト用クライアント。
    """

    def __init__(self, rounds: List[Round]) -> None:
        self._rounds = list(rounds)
        self.calls: List[List[str]] = []
        self.messages: List[Message] = []

    def send_no_retry(self, message, registration_ids):
        self.calls.append(list(registration_ids))
        self.messages.append(message)
        round_ = self._rounds.pop(0)
        if callable(round_):
            return round_(registration_ids)
        return round_


class RecordingSleeper:
    """実際には待たず、待機時間だけを記録する Sleeper。"""

    def __init__(self) -> None:
        self.sleeps: List[float] = []

    def sleep(self, seconds, cancel_event=None) -> bool:
        self.sleeps.append(seconds)
        return True


def _outcome(multicast_id: int, *results: RecipientResult) -> RoundResult:
    success = sum(1 for r in results if r.is_delivered)
    return RoundResult.success(
        BatchOutcome(
            multicast_id=multicast_id,
            success=success,
            failure=len(results) - success,
            canonical_ids=sum(1 for r in results if r.canonical_registration_id),
            results=list(results),
        )
    )


def _all_delivered(multicast_id: int) -> Callable[[Sequence[str]], RoundResult]:
    def _round(registration_ids):
        return _outcome(
            multicast_id,
            *[RecipientResult.delivered(f"m-{rid}-{multicast_id}") for rid in registration_ids],
        )

    return _round


def _make_service(client, sleeper=None, **kwargs) -> GcmService:
    return GcmService(
        client=client,
        sleeper=sleeper or RecordingSleeper(),
        rng=random.Random(7),
        **kwargs,
    )


def test_all_success_single_round():
    """
    3件すべて成功 → 1ラウンドで完了し、multicast_id は 42、再送 ID はなし。
    """
    client = ScriptedClient([_all_delivered(42)])
    sleeper = RecordingSleeper()
    service = _make_service(client, sleeper)

    report = service.send_multicast(Message(), ["a", "b", "c"], retries=3)

    assert report.status == DeliveryStatus.COMPLETED
    assert report.attempts == 1
    result = report.result
    assert result.success == 3
    assert result.failure == 0
    assert result.multicast_id == 42
    assert result.retry_multicast_ids == []
    assert client.calls == [["a", "b", "c"]]
    assert sleeper.sleeps == []


def test_partial_retriable_failure_resolved_on_second_round():
    client = ScriptedClient(
        [
            _outcome(
                1,
                RecipientResult.delivered("m-a"),
                RecipientResult.failed("Unavailable"),
                RecipientResult.delivered("m-c"),
            ),
            _outcome(2, RecipientResult.delivered("m-b")),
        ]
    )
    service = _make_service(client)

    report = service.send_multicast(Message(), ["a", "b", "c"], retries=3)

    assert report.status == DeliveryStatus.COMPLETED
    assert client.calls == [["a", "b", "c"], ["b"]]
    result = report.result
    assert [r.message_id for r in result.results] == ["m-a", "m-b", "m-c"]
    assert result.success == 3
    assert result.failure == 0
    assert result.multicast_id == 1
    assert result.retry_multicast_ids == [2]
    assert report.pending_registration_ids == []


def test_terminal_recipient_error_is_never_retried():
    client = ScriptedClient([_outcome(1, RecipientResult.failed("InvalidRegistration"))])
    sleeper = RecordingSleeper()
    service = _make_service(client, sleeper)

    report = service.send_multicast(Message(), ["a"], retries=5)

    assert report.status == DeliveryStatus.COMPLETED
    assert len(client.calls) == 1
    assert report.result.failure == 1
    assert report.result.results[0].error_code == "InvalidRegistration"
    assert sleeper.sleeps == []


def test_terminal_protocol_failure_aborts_without_retry():
    client = ScriptedClient([RoundResult.terminal(GcmInvalidRequestError(400, "bad json"))])
    sleeper = RecordingSleeper()
    service = _make_service(client, sleeper)

    report = service.send_multicast(Message(), ["a", "b"], retries=5)

    assert report.status == DeliveryStatus.PROTOCOL_ERROR
    assert report.result is None
    assert report.error.status_code == 400
    assert report.error.body == "bad json"
    assert len(client.calls) == 1
    assert sleeper.sleeps == []

    with pytest.raises(GcmInvalidRequestError) as exc_info:
        report.raise_for_error()
    assert exc_info.value.status_code == 400


def test_terminal_protocol_failure_through_http_client():
    """
    実際の GcmClient（MockTransport）経由でも HTTP 400 で即中断する。
    """
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400, text="bad request")

    client = GcmClient(
        settings=GcmSettings(api_key="k", send_endpoint="https://gcm.example.com/send"),
        transport=httpx.MockTransport(handler),
    )
    report = _make_service(client).send_multicast(Message(), ["a"], retries=3)

    assert report.status == DeliveryStatus.PROTOCOL_ERROR
    assert report.error.status_code == 400
    assert report.error.body == "bad request"
    assert len(calls) == 1


def test_every_round_indeterminate_is_exhaustion():
    retries = 2
    client = ScriptedClient([RoundResult.indeterminate("timeout")] * (retries + 1))
    sleeper = RecordingSleeper()
    service = _make_service(client, sleeper)

    report = service.send_multicast(Message(), ["a", "b"], retries=retries)

    assert report.status == DeliveryStatus.EXHAUSTED
    assert report.attempts == retries + 1
    assert report.result is None
    assert "3 attempts" in report.error.message
    assert client.calls == [["a", "b"]] * 3
    assert len(sleeper.sleeps) == retries

    with pytest.raises(GcmUnavailableError):
        report.raise_for_error()


def test_indeterminate_round_then_success():
    client = ScriptedClient([RoundResult.indeterminate("connect error"), _all_delivered(9)])
    service = _make_service(client)

    report = service.send_multicast(Message(), ["a", "b"], retries=1)

    assert report.status == DeliveryStatus.COMPLETED
    assert report.result.multicast_id == 9
    assert report.result.retry_multicast_ids == []
    assert client.calls == [["a", "b"], ["a", "b"]]


def test_retry_scoping_and_settlement():
    """
    再送対象は Unavailable / InternalServerError の ID だけで、確定済みの結果は変わらない。
    """
    client = ScriptedClient(
        [
            _outcome(
                1,
                RecipientResult.failed("InternalServerError"),
                RecipientResult.failed("NotRegistered"),
                RecipientResult.delivered("m-c"),
                RecipientResult.failed("Unavailable"),
                RecipientResult.failed("QuotaExceeded"),
            ),
            _outcome(
                2,
                RecipientResult.failed("Unavailable"),
                RecipientResult.delivered("m-d"),
            ),
            _outcome(3, RecipientResult.delivered("m-a")),
        ]
    )
    service = _make_service(client)

    report = service.send_multicast(Message(), ["a", "b", "c", "d", "e"], retries=5)

    assert client.calls == [["a", "b", "c", "d", "e"], ["a", "d"], ["a"]]
    result = report.result
    assert [r.message_id for r in result.results] == ["m-a", None, "m-c", "m-d", None]
    assert result.results[1].error_code == "NotRegistered"
    assert result.results[4].error_code == "QuotaExceeded"
    assert result.success == 3
    assert result.failure == 2
    assert result.retry_multicast_ids == [2, 3]


def test_retries_exhausted_with_pending_recipients_still_completes():
    client = ScriptedClient(
        [
            _outcome(1, RecipientResult.delivered("m-a"), RecipientResult.failed("Unavailable")),
            _outcome(2, RecipientResult.failed("Unavailable")),
        ]
    )
    service = _make_service(client)

    report = service.send_multicast(Message(), ["a", "b"], retries=1)

    assert report.status == DeliveryStatus.COMPLETED
    assert report.attempts == 2
    assert report.pending_registration_ids == ["b"]
    assert report.result.results[1].error_code == "Unavailable"
    assert report.result.success + report.result.failure == 2


def test_backoff_sleeps_are_jittered_and_growing():
    client = ScriptedClient([RoundResult.indeterminate("down")] * 4)
    sleeper = RecordingSleeper()
    service = _make_service(client, sleeper)

    service.send_multicast(Message(), ["a"], retries=3)

    assert len(sleeper.sleeps) == 3
    for attempt, seconds in enumerate(sleeper.sleeps, start=1):
        delay = 2 ** (attempt - 1)
        assert delay / 2 <= seconds < delay * 1.5


def test_order_preserved_regardless_of_settlement_order():
    client = ScriptedClient(
        [
            _outcome(
                1,
                RecipientResult.failed("Unavailable"),
                RecipientResult.failed("Unavailable"),
                RecipientResult.delivered("m-c"),
            ),
            _outcome(2, RecipientResult.failed("Unavailable"), RecipientResult.delivered("m-b")),
            _outcome(3, RecipientResult.delivered("m-a")),
        ]
    )
    report = _make_service(client).send_multicast(Message(), ["a", "b", "c"], retries=4)

    assert [r.message_id for r in report.result.results] == ["m-a", "m-b", "m-c"]


def test_length_mismatch_is_internal_error():
    client = ScriptedClient(
        [_outcome(1, RecipientResult.delivered("m-a"), RecipientResult.delivered("m-x"))]
    )
    report = _make_service(client).send_multicast(Message(), ["a"], retries=3)

    assert report.status == DeliveryStatus.INTERNAL_ERROR
    assert len(client.calls) == 1
    with pytest.raises(GcmInternalError):
        report.raise_for_error()


def test_empty_registration_ids_rejected():
    with pytest.raises(ValueError):
        _make_service(ScriptedClient([])).send_multicast(Message(), [], retries=1)


def test_cancel_before_first_round():
    client = ScriptedClient([])
    event = threading.Event()
    event.set()

    report = _make_service(client).send_multicast(
        Message(), ["a"], retries=3, cancel_event=event
    )

    assert report.status == DeliveryStatus.CANCELLED
    assert report.attempts == 0
    assert client.calls == []


def test_cancel_during_backoff_sleep():
    class CancellingSleeper:
        def sleep(self, seconds, cancel_event=None) -> bool:
            cancel_event.set()
            return False

    client = ScriptedClient([RoundResult.indeterminate("down")] * 3)
    event = threading.Event()

    report = _make_service(client, CancellingSleeper()).send_multicast(
        Message(), ["a"], retries=2, cancel_event=event
    )

    assert report.status == DeliveryStatus.CANCELLED
    assert report.attempts == 1
    assert "cancelled" in report.error.message
    assert len(client.calls) == 1
    with pytest.raises(GcmDeliveryCancelled):
        report.raise_for_error()


def test_deadline_exceeded_is_cancellation_not_exhaustion():
    client = ScriptedClient([RoundResult.indeterminate("down")] * 3)
    sleeper = RecordingSleeper()
    service = _make_service(client, sleeper, clock=lambda: 100.0)

    report = service.send_multicast(Message(), ["a"], retries=2, timeout_seconds=0.1)

    assert report.status == DeliveryStatus.CANCELLED
    assert report.error.message == "delivery deadline exceeded"
    assert report.attempts == 1
    assert sleeper.sleeps == [pytest.approx(0.1)]


def test_default_retries_used_when_not_given():
    client = ScriptedClient([RoundResult.indeterminate("down")] * 2)
    service = _make_service(client, default_retries=1)

    report = service.send_multicast(Message(), ["a"])

    assert report.status == DeliveryStatus.EXHAUSTED
    assert report.attempts == 2


# ---- 1件送信ファサード / 登録 ID 検証 ------------------------------------


def test_send_returns_single_result():
    client = ScriptedClient([_outcome(3, RecipientResult.delivered("m-1", "canon"))])

    result = _make_service(client).send(Message(), "a", retries=0)

    assert result.message_id == "m-1"
    assert result.canonical_registration_id == "canon"


def test_send_raises_when_gateway_unreachable():
    client = ScriptedClient([RoundResult.indeterminate("down")] * 2)

    with pytest.raises(GcmUnavailableError):
        _make_service(client).send(Message(), "a", retries=1)


def test_send_no_retry_makes_one_attempt():
    client = ScriptedClient([RoundResult.indeterminate("down")])

    with pytest.raises(GcmUnavailableError):
        _make_service(client).send_no_retry(Message(), "a")
    assert len(client.calls) == 1


def test_send_rejects_wrong_cardinality(monkeypatch):
    service = _make_service(ScriptedClient([]))
    two = [RecipientResult.delivered("m-1"), RecipientResult.delivered("m-2")]

    def fake_send_multicast(*args, **kwargs):
        return DeliveryReport(
            status=DeliveryStatus.COMPLETED,
            attempts=1,
            result=DeliveryResult(
                success=2,
                failure=0,
                canonical_ids=0,
                multicast_id=1,
                results=two,
            ),
        )

    monkeypatch.setattr(service, "send_multicast", fake_send_multicast)

    with pytest.raises(GcmInternalError):
        service.send(Message(), "a")


@pytest.mark.parametrize(
    "result, expected",
    [
        (RecipientResult.failed("InvalidRegistration"), False),
        (RecipientResult.failed("NotRegistered"), True),
        (RecipientResult.delivered("m-1"), True),
    ],
)
def test_is_registration_valid(result, expected):
    client = ScriptedClient([_outcome(1, result)])

    assert _make_service(client).is_registration_valid("a") is expected
    assert client.messages[0].dry_run is True
    assert client.messages[0].data == {}
    assert client.calls == [["a"]]


def test_is_registration_valid_raises_when_gateway_never_answers():
    client = ScriptedClient([RoundResult.indeterminate("down")] * 6)

    with pytest.raises(GcmUnavailableError):
        _make_service(client).is_registration_valid("a")
    assert len(client.calls) == 6
