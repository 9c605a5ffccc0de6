"""Settlement event payloads.

Two events are fired, both after the database transaction has been committed.
"""

from ..models import STATUSES


def settlementupdate(request_id, owner_id, rune_key, amount, sequence, from_status, to_status, txid=None, confirmations=None, failure_reason=None, **extra):
    """settlementupdate event reports a state machine transition of a settlement request.

    The first event of every request has ``sequence`` 1 and ``to_status`` ``queued``. Each later transition increments ``sequence`` by one, so subscribers can tell missed or duplicate deliveries.

    :param request_id: Id of :py:class:`runesettle.models.SettlementRequest` as int

    :param owner_id: Owner of the virtual balance

    :param rune_key: Rune id as ``block:tx`` string

    :param amount: Settled amount in the rune's base units as int

    :param sequence: Position of this transition in the request history

    :param from_status: Previous status, ``None`` for the first event

    :param to_status: New status

    :param txid: Bitcoin transaction id once broadcasted

    :param confirmations: Confirmation count once broadcasted

    :param failure_reason: Set when ``to_status`` is ``failed``

    :param extra: Any additional data, like ``created_at``

    :return: Event data as dict()
    """
    assert type(request_id) == int, "Expected request id as int, got {}".format(request_id)
    assert type(sequence) == int
    assert sequence >= 1
    assert to_status in STATUSES
    assert from_status is None or from_status in STATUSES
    assert amount > 0
    if to_status == "failed":
        assert failure_reason, "Failed settlement {} must tell why".format(request_id)
    data = dict(request_id=request_id, owner_id=owner_id, rune_key=rune_key, amount=amount, sequence=sequence, from_status=from_status, to_status=to_status, txid=txid, confirmations=confirmations, failure_reason=failure_reason)
    data.update(extra)
    return data


def confirmationupdate(request_id, owner_id, txid, confirmations, required_confirmations, **extra):
    """confirmationupdate event reports a new confirmation count of a broadcasted settlement.

    The request stays in ``confirming`` until ``confirmations`` reaches ``required_confirmations``, after which a ``settlementupdate`` to ``confirmed`` follows.

    :return: Event data as dict()
    """
    assert type(request_id) == int
    assert type(txid) == str
    assert confirmations >= 0
    data = dict(request_id=request_id, owner_id=owner_id, txid=txid, confirmations=confirmations, required_confirmations=required_confirmations)
    data.update(extra)
    return data
