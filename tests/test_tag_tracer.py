import dataclasses

import pytest

from gossipkit.tag_tracer import (
    DIRECT_PEER_TAG,
    GOSSIPSUB_CONN_TAG_MESSAGE_DELIVERY_CAP,
    ConnManager,
    DecayingTag,
    TagTracer,
    topic_tag,
)
from gossipkit.validation import Message


def _message(peer, topic, data, seqno):
    return Message(
        data=data,
        topic=topic,
        from_peer=peer.encode(),
        seqno=seqno,
        received_from=peer,
    )


def test_topic_tag_format():
    assert topic_tag("a-topic") == "pubsub:a-topic"


def test_mesh_tags():
    cmgr = ConnManager()
    tt = TagTracer(cmgr)
    tt.join("a-topic")
    tt.graft("a-peer", "a-topic")
    assert cmgr.is_protected("a-peer", "pubsub:a-topic")
    tt.prune("a-peer", "a-topic")
    assert not cmgr.is_protected("a-peer", "pubsub:a-topic")


def test_direct_peer_tags():
    cmgr = ConnManager()
    tt = TagTracer(cmgr)
    tt.start(direct={"1"})
    for peer in ("1", "2", "3"):
        tt.add_peer(peer, "/meshsub/1.0.0")
    assert cmgr.is_protected("1", DIRECT_PEER_TAG)
    assert not cmgr.is_protected("2", DIRECT_PEER_TAG)
    assert not cmgr.is_protected("3", DIRECT_PEER_TAG)


def test_no_direct_set_protects_nobody():
    cmgr = ConnManager()
    tt = TagTracer(cmgr)
    tt.add_peer("1", "/meshsub/1.0.0")
    assert cmgr.is_protected("1") is False


def test_delivery_tags_cap_decay_and_leave():
    cmgr = ConnManager()
    tt = TagTracer(cmgr)
    tt.join("topic-1")
    tt.join("topic-2")
    for i in range(20):
        topic = "topic-2" if i < 5 else "topic-1"
        tt.deliver_message(_message("a-peer", topic, b"hello", str(i).encode()))

    info = cmgr.tag_info("a-peer")
    assert info["pubsub-deliveries:topic-1"] == GOSSIPSUB_CONN_TAG_MESSAGE_DELIVERY_CAP
    assert info["pubsub-deliveries:topic-2"] == 5

    for _ in range(5):
        cmgr.decay()
    info = cmgr.tag_info("a-peer")
    assert info["pubsub-deliveries:topic-1"] == GOSSIPSUB_CONN_TAG_MESSAGE_DELIVERY_CAP - 5
    assert "pubsub-deliveries:topic-2" not in info

    tt.leave("topic-1")
    assert "pubsub-deliveries:topic-1" not in cmgr.tag_info("a-peer")


def test_delivery_tags_near_first():
    cmgr = ConnManager()
    tt = TagTracer(cmgr)
    tt.join("test")
    for i in range(GOSSIPSUB_CONN_TAG_MESSAGE_DELIVERY_CAP + 5):
        msg = _message("a-peer", "test", f"msg-{i}".encode(), str(i).encode())
        dup = dataclasses.replace(msg, received_from="another-peer")
        tt.validate_message(msg)
        tt.duplicate_message(dup)
        tt.deliver_message(msg)
        late = dataclasses.replace(msg, received_from="slow-peer")
        tt.duplicate_message(late)

    tag = "pubsub-deliveries:test"
    assert cmgr.tag_info("a-peer")[tag] == GOSSIPSUB_CONN_TAG_MESSAGE_DELIVERY_CAP
    assert cmgr.tag_info("another-peer")[tag] == GOSSIPSUB_CONN_TAG_MESSAGE_DELIVERY_CAP
    assert cmgr.tag_info("slow-peer").get(tag, 0) == 0


def test_near_first_peers_recorded_during_validation():
    tt = TagTracer(ConnManager())
    msg = _message("a", "t", b"x", b"1")
    tt.validate_message(msg)
    tt.duplicate_message(dataclasses.replace(msg, received_from="b"))
    assert tt.near_first_peers(msg) == ["b"]


def test_validation_rejection_clears_near_first_state():
    tt = TagTracer(ConnManager())
    msg = _message("a", "t", b"x", b"1")
    tt.validate_message(msg)
    tt.reject_message(msg, "validation failed")
    tt.duplicate_message(dataclasses.replace(msg, received_from="b"))
    assert tt.near_first_peers(msg) == []


def test_other_rejection_keeps_near_first_state():
    tt = TagTracer(ConnManager())
    msg = _message("a", "t", b"x", b"1")
    tt.validate_message(msg)
    tt.reject_message(msg, "missing signature")
    tt.duplicate_message(dataclasses.replace(msg, received_from="b"))
    assert tt.near_first_peers(msg) == ["b"]


def test_manager_without_decay_applies_no_delivery_tags():
    class PlainManager(ConnManager):
        supports_decay = False

    cmgr = PlainManager()
    tt = TagTracer(cmgr)
    tt.join("t")
    tt.deliver_message(_message("a", "t", b"x", b"1"))
    assert cmgr.tag_info("a") == {}


def test_duplicate_decaying_tag_name_rejected():
    cmgr = ConnManager()
    cmgr.register_decaying_tag("x", 1.0, 1, 10)
    with pytest.raises(ValueError):
        cmgr.register_decaying_tag("x", 1.0, 1, 10)


def test_decaying_tag_bounds_and_close():
    tag = DecayingTag("x", 1.0, 2, 3)
    tag.bump("p", 5)
    assert tag.value("p") == 3
    tag.decay()
    assert tag.value("p") == 1
    tag.close()
    with pytest.raises(RuntimeError):
        tag.bump("p", 1)


def test_unprotect_reports_remaining_protection():
    cmgr = ConnManager()
    cmgr.protect("p", "a")
    cmgr.protect("p", "b")
    assert cmgr.unprotect("p", "a") is True
    assert cmgr.unprotect("p", "b") is False