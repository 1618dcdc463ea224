import pytest

from chronomesh.epoch import (
    EpochFinalization,
    EpochTracker,
    EpochVote,
    format_epoch_vote,
    parse_epoch_finalization,
    parse_epoch_vote,
)
from chronomesh.message import (
    ReadRequest,
    RequestMessage,
    WriteRequest,
    new_p2p_message,
    new_request_message,
)
from chronomesh.vlc import Clock


def _write(req_id, sender="0xA", key="k", value="v"):
    return new_request_message(
        sender, "0xB", req_id, RequestMessage(write=WriteRequest(key=key, value=value)), Clock(), ""
    )


def _read(req_id, sender="0xA"):
    return new_request_message(
        sender, "0xB", req_id, RequestMessage(read=ReadRequest(key="k")), Clock(), ""
    )


def test_parse_finalization_fields():
    content = "map[epoch_hash:abc epoch_number:3 message_count:5 sender:0xA type:epoch_finalize]"
    result = parse_epoch_finalization(content)
    assert result.epoch_number == 3
    assert result.epoch_hash == "abc"
    assert result.sender == "0xA"
    assert result.message_count == 5
    assert result.milestone_key == "M:3"


def test_parse_finalization_count_closed_by_bracket():
    content = "[epoch_number:2 epoch_hash:ff sender:0xB message_count:7]"
    result = parse_epoch_finalization(content)
    assert result.message_count == 7
    assert result.epoch_number == 2


def test_parse_finalization_field_at_start_is_ignored():
    with pytest.raises(ValueError):
        parse_epoch_finalization("epoch_number:3 epoch_hash:abc sender:x ")


def test_parse_finalization_missing_hash():
    with pytest.raises(ValueError):
        parse_epoch_finalization("x epoch_number:3 sender:0xA ")


def test_vote_wire_format():
    assert format_epoch_vote(2, "0xsig", "0xV") == (
        "map[epoch_number:2 signature:0xsig type:epoch_vote voter:0xV]"
    )


def test_vote_round_trip():
    text = format_epoch_vote(9, "0x1234", "0xVoter")
    assert parse_epoch_vote(text) == EpochVote(epoch_number=9, signature="0x1234", voter="0xVoter")


def test_vote_quotes_are_trimmed():
    vote = parse_epoch_vote("map[epoch_number:4 signature:'0xab' type:epoch_vote voter:\"0xcd\"]")
    assert vote.signature == "0xab"
    assert vote.voter == "0xcd"


@pytest.mark.parametrize(
    "content",
    [
        "map[epoch_number:0 signature:0x1 voter:0x2]",
        "map[epoch_number:abc signature:0x1 voter:0x2]",
        "map[epoch_number:1 voter:0x2]",
        "map[epoch_number:1 signature:0x1]",
    ],
)
def test_vote_malformed(content):
    with pytest.raises(ValueError):
        parse_epoch_vote(content)


def test_track_counts_writes_until_threshold():
    tracker = EpochTracker(threshold=3)
    results = [tracker.track(_write(f"r{i}")) for i in range(3)]
    assert results == [False, False, True]
    assert tracker.message_count == 3
    assert tracker.message_ids == ["r0", "r1", "r2"]


def test_track_reads_are_digested_but_not_counted():
    tracker = EpochTracker(threshold=1)
    assert tracker.track(_read("q1")) is False
    assert tracker.message_count == 0
    assert tracker.message_digests == ["q1:0xA:request"]


def test_track_ignores_consensus_and_missing_ids():
    tracker = EpochTracker()
    vote = new_p2p_message("0xA", "0xB", "m1", format_epoch_vote(1, "0x1", "0xA"), "", Clock())
    assert tracker.track(vote) is False
    assert tracker.track(None) is False
    assert tracker.track(_write("")) is False
    assert tracker.message_ids == []


def test_set_threshold_ignores_non_positive():
    tracker = EpochTracker()
    tracker.set_threshold(4)
    tracker.set_threshold(0)
    tracker.set_threshold(-2)
    assert tracker.threshold == 4


def test_finalize_resets_and_advances():
    tracker = EpochTracker(address="0xSelf")
    tracker.track(_write("a"))
    tracker.add_event("e1_2")
    result = tracker.finalize()
    assert isinstance(result, EpochFinalization)
    assert result.epoch_number == 1
    assert result.event_ids == ["e1_2"]
    assert result.message_count == 1
    assert result.sender == "0xSelf"
    assert len(result.epoch_hash) == 64
    assert tracker.epoch_number == 1
    assert tracker.last_epoch_hash == result.epoch_hash
    assert (tracker.message_count, tracker.message_ids, tracker.event_ids) == (0, [], [])


def test_finalize_hash_ignores_message_order():
    first, second = EpochTracker(), EpochTracker()
    for req in ("a", "b", "c"):
        first.track(_write(req))
    for req in ("c", "a", "b"):
        second.track(_write(req))
    assert first.finalize().epoch_hash == second.finalize().epoch_hash


def test_finalize_hash_is_chained():
    tracker = EpochTracker()
    tracker.track(_write("a"))
    one = tracker.finalize()
    tracker.track(_write("a"))
    two = tracker.finalize()
    assert two.epoch_number == one.epoch_number + 1
    assert two.epoch_hash != one.epoch_hash


def test_reset_to_only_moves_forward():
    tracker = EpochTracker()
    tracker.track(_write("a"))
    assert tracker.reset_to(5) is True
    assert tracker.epoch_number == 5
    assert tracker.message_count == 0
    assert tracker.reset_to(3) is False
    assert tracker.epoch_number == 5


def test_record_received_once():
    tracker = EpochTracker()
    assert tracker.record_received(2, "h2") is True
    assert tracker.record_received(2, "other") is False
    assert tracker.received_epochs == {2: "h2"}
    assert tracker.epoch_number == 2


def test_record_vote_requires_sent_epoch():
    tracker = EpochTracker(address="0xSelf")
    assert tracker.record_vote(1, "0xP", "0xsig", ["0xP"]) is False
    assert 1 not in tracker.received_votes


def test_record_vote_all_peers():
    tracker = EpochTracker(address="0xSelf")
    tracker.sent_epochs[1] = True
    peers = ["0xSelf", "0xP", "0xQ"]
    assert tracker.record_vote(1, "0xP", "0xs1", peers) is False
    assert tracker.record_vote(1, "0xQ", "0xs2", peers) is True
    assert tracker.received_votes[1] == {"0xP": "0xs1", "0xQ": "0xs2"}