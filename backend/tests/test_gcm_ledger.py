import pytest

from push_relay.gcm.errors import LedgerConsistencyError
from push_relay.gcm.ledger import LedgerState, aggregate, merge_round
from push_relay.gcm.schemas import BatchOutcome, RecipientResult


def _outcome(multicast_id: int, *results: RecipientResult) -> BatchOutcome:
    success = sum(1 for r in results if r.is_delivered)
    return BatchOutcome(
        multicast_id=multicast_id,
        success=success,
        failure=len(results) - success,
        canonical_ids=0,
        results=list(results),
    )


def test_merge_keeps_only_retriable_errors_pending():
    state = LedgerState.initial(["a", "b", "c", "d"])

    merged = merge_round(
        state,
        _outcome(
            1,
            RecipientResult.delivered("m-a"),
            RecipientResult.failed("Unavailable"),
            RecipientResult.failed("NotRegistered"),
            RecipientResult.failed("InternalServerError"),
        ),
    )

    assert merged.pending == ("b", "d")
    assert merged.settled["a"].message_id == "m-a"
    assert merged.settled["c"].error_code == "NotRegistered"
    # 元の状態は変わらない
    assert state.pending == ("a", "b", "c", "d")
    assert dict(state.settled) == {}


def test_merge_length_mismatch_is_fatal():
    state = LedgerState.initial(["a", "b"])

    with pytest.raises(LedgerConsistencyError):
        merge_round(state, _outcome(1, RecipientResult.delivered("m-a")))


def test_settled_result_is_never_overwritten():
    """
    確定済みの ID は、後のラウンドで別の結果が返っても上書きされない。
    """
    state = LedgerState.initial(["a", "a"])

    merged = merge_round(
        state,
        _outcome(
            1,
            RecipientResult.delivered("m-1"),
            RecipientResult.failed("Unavailable"),
        ),
    )

    assert merged.settled["a"].message_id == "m-1"
    assert merged.pending == ()


def test_duplicate_settled_later_in_same_round_leaves_pending():
    state = LedgerState.initial(["a", "a"])

    merged = merge_round(
        state,
        _outcome(
            1,
            RecipientResult.failed("Unavailable"),
            RecipientResult.delivered("m-2"),
        ),
    )

    assert merged.settled["a"].message_id == "m-2"
    assert merged.pending == ()


def test_aggregate_preserves_input_order_and_counts():
    state = LedgerState.initial(["a", "b", "c"])
    state = merge_round(
        state,
        _outcome(
            10,
            RecipientResult.delivered("m-a", canonical_registration_id="a2"),
            RecipientResult.failed("Unavailable"),
            RecipientResult.failed("InvalidRegistration"),
        ),
    )
    state = merge_round(state, _outcome(11, RecipientResult.delivered("m-b")))

    result = aggregate(["a", "b", "c"], state, [10, 11])

    assert [r.message_id for r in result.results] == ["m-a", "m-b", None]
    assert result.results[2].error_code == "InvalidRegistration"
    assert result.success == 2
    assert result.failure == 1
    assert result.canonical_ids == 1
    assert result.multicast_id == 10
    assert result.retry_multicast_ids == [11]


def test_aggregate_duplicates_resolve_to_same_result():
    state = merge_round(
        LedgerState.initial(["a", "b", "a"]),
        _outcome(
            5,
            RecipientResult.delivered("m-a1"),
            RecipientResult.delivered("m-b"),
            RecipientResult.delivered("m-a2"),
        ),
    )

    result = aggregate(["a", "b", "a"], state, [5])

    assert len(result.results) == 3
    assert result.results[0] == result.results[2]
    assert result.success + result.failure == 3


def test_aggregate_requires_a_successful_round():
    with pytest.raises(LedgerConsistencyError):
        aggregate(["a"], LedgerState.initial(["a"]), [])
