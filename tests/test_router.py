import pytest

from enrd.constants import KIND_ROOM, KIND_VISITOR, STATE_OPENED
from enrd.errors import DuplicateIdentity


def test_open_room_then_enter_counts_occupancy(hub) -> None:
    cafe = hub.room("Cafe1")
    ann = hub.visitor("Ann")

    ack = hub.send(ann, "enterRoom", {"room": "Cafe1", "visitor": "Ann"})
    assert ack["error"] == "RoomNotOpen"
    assert not hub.groups.contains("Cafe1", ann)

    ack = hub.send(cafe, "openRoom", {"room": "Cafe1", "id": cafe})
    assert ack == {"event": "openRoom", "room": "Cafe1", "result": True, "flushed": 0}

    ack = hub.send(ann, "enterRoom", {"room": "Cafe1", "visitor": "Ann", "sentTime": 1})
    assert ack["result"] is True
    assert ack["occupancy"] == 1
    assert ack["emits"] == "checkIn"

    check_ins = hub.transport.received(cafe, "checkIn")
    assert len(check_ins) == 1
    assert check_ins[0]["visitor"] == "Ann"
    assert check_ins[0]["socketId"] == ann
    assert check_ins[0]["sentTime"] == 1

    updates = [p for e, p in hub.transport.hub_wide if e == "updatedOccupancy"]
    assert updates[-1] == {"room": "Cafe1", "occupancy": 1}


def test_leave_room_emits_check_out(hub) -> None:
    cafe = hub.open("Cafe1")
    ann = hub.visitor("Ann")
    hub.send(ann, "enterRoom", {"room": {"room": "Cafe1", "id": cafe}, "visitor": "Ann"})

    ack = hub.send(
        ann, "leaveRoom", {"room": "Cafe1", "visitor": "Ann", "message": "Bye"}
    )
    assert ack["result"] is True
    assert ack["occupancy"] == 0
    assert not hub.groups.contains("Cafe1", ann)

    check_outs = hub.transport.received(cafe, "checkOut")
    assert check_outs == [
        {"visitor": "Ann", "room": "Cafe1", "sentTime": None, "message": "Bye"}
    ]


def test_leave_room_never_entered_is_a_no_op(hub) -> None:
    hub.open("Cafe1")
    ann = hub.visitor("Ann")
    ack = hub.send(ann, "leaveRoom", {"room": "Cafe1", "visitor": "Ann"})
    assert "error" not in ack
    assert ack["result"] is True


def test_close_room_makes_it_unenterable(hub) -> None:
    cafe = hub.open("Cafe1")
    ack = hub.send(cafe, "closeRoom", {"room": "Cafe1", "id": cafe})
    assert ack == {"event": "closeRoom", "room": "Cafe1", "result": True}
    assert not hub.router.tracker.is_open("Cafe1")

    ann = hub.visitor("Ann")
    ack = hub.send(ann, "enterRoom", {"room": "Cafe1", "visitor": "Ann"})
    assert ack["error"] == "RoomNotOpen"


def test_open_room_requires_matching_room_connection(hub) -> None:
    hub.room("Cafe1")
    ann = hub.visitor("Ann")
    other = hub.room("Cafe2")

    ack = hub.send(ann, "openRoom", {"room": "Cafe1"})
    assert ack["error"] == "InvalidPayload"

    ack = hub.send(other, "openRoom", {"room": "Cafe1"})
    assert ack["error"] == "InvalidPayload"
    assert not hub.router.tracker.is_open("Cafe1")


def test_exposure_warning_for_closed_room_is_delivered_on_open(hub) -> None:
    bob = hub.visitor("Bob")
    ack = hub.send(
        bob,
        "exposureWarning",
        {"visitor": "Bob", "warnings": {"Cafe1": ["2021-01-01"]}},
    )
    assert ack["result"] == [{"room": "Cafe1", "result": "PENDING"}]
    assert len(hub.pending.snapshot()["Cafe1"]) == 1

    cafe = hub.open("Cafe1")

    notices = hub.transport.received(cafe, "notifyRoom")
    assert len(notices) == 1
    assert notices[0]["exposureDates"] == ["2021-01-01"]
    assert notices[0]["visitor"] == "Bob"
    assert hub.transport.group_sends("notifyRoom") == [("Cafe1", notices[0])]
    assert not hub.pending.has_pending("Cafe1")


def test_exposure_warning_for_open_room_is_immediate(hub) -> None:
    cafe = hub.open("Cafe1")
    bob = hub.visitor("Bob")
    ack = hub.send(
        bob,
        "exposureWarning",
        {
            "visitor": "Bob",
            "warnings": {"Cafe1": ["2021-01-01", "2021-01-02"], "Cafe2": "2021-01-03"},
            "reason": "positive test",
        },
    )
    assert ack["emit"] == "notifyRoom"
    assert ack["result"] == [
        {"room": "Cafe1", "result": "WARNED"},
        {"room": "Cafe2", "result": "PENDING"},
    ]
    notices = hub.transport.received(cafe, "notifyRoom")
    assert notices == [
        {
            "room": "Cafe1",
            "reason": "positive test",
            "exposureDates": ["2021-01-01", "2021-01-02"],
            "visitor": "Bob",
        }
    ]
    assert list(hub.pending.snapshot()) == ["Cafe2"]


def test_room_connected_but_not_open_gets_warning_on_open(hub) -> None:
    cafe = hub.room("Cafe1")
    bob = hub.visitor("Bob")
    hub.send(bob, "exposureWarning", {"visitor": "Bob", "warnings": {"Cafe1": ["d1"]}})
    assert hub.transport.received(cafe, "notifyRoom") == []

    ack = hub.send(cafe, "openRoom", {"room": "Cafe1"})
    assert ack["flushed"] == 1
    assert len(hub.transport.received(cafe, "notifyRoom")) == 1


def test_alert_for_offline_visitor_is_delivered_on_connect_in_order(hub) -> None:
    cafe = hub.open("Cafe1")
    for dates in (["d1"], ["d2"]):
        ack = hub.send(cafe, "alertVisitor", {"visitor": "Ann", "message": dates})
        assert ack == {"event": "alertVisitor", "visitor": "Ann", "result": "PENDING"}

    ann = hub.visitor("Ann")
    alerts = hub.transport.received(ann, "exposureAlert")
    assert [a["exposureDates"] for a in alerts] == [["d1"], ["d2"]]
    assert all(a["room"] == "Cafe1" for a in alerts)
    assert not hub.pending.has_pending("Ann")

    # A second connect has nothing left to deliver.
    hub.router.disconnect(ann)
    ann2 = hub.visitor("Ann", cid="visitor-Ann-2")
    assert hub.transport.received(ann2, "exposureAlert") == []


def test_alert_for_online_visitor_is_immediate(hub) -> None:
    cafe = hub.open("Cafe1")
    ann = hub.visitor("Ann")
    ack = hub.send(cafe, "alertVisitor", {"visitor": "Ann", "message": ["d1"]})
    assert ack["result"] == "ALERTED"
    assert hub.transport.received(ann, "exposureAlert") == [
        {"visitor": "Ann", "exposureDates": ["d1"], "room": "Cafe1"}
    ]


def test_alert_visitor_validation(hub) -> None:
    cafe = hub.open("Cafe1")
    ack = hub.send(cafe, "alertVisitor", {"visitor": "Ann"})
    assert ack["error"] == "InvalidPayload"
    assert ack["message"] == "No message to process"

    ack = hub.send(cafe, "alertVisitor", {"message": ["d1"]})
    assert ack["message"] == "Missing visitor identity"
    assert hub.pending.total() == 0


def test_failed_unicast_defers_alert(hub) -> None:
    cafe = hub.open("Cafe1")
    ann = hub.visitor("Ann")
    hub.transport.fail_unicast.add(ann)

    ack = hub.send(cafe, "alertVisitor", {"visitor": "Ann", "message": ["d1"]})
    assert ack["result"] == "PENDING"

    hub.transport.fail_unicast.clear()
    assert hub.router.reconcile() == 1
    assert len(hub.transport.received(ann, "exposureAlert")) == 1


def test_room_name_shared_with_visitor_does_not_steal_alerts(hub) -> None:
    cafe = hub.open("Cafe1")
    hub.send(cafe, "alertVisitor", {"visitor": "Shared", "message": ["d1"]})
    room = hub.room("Shared")
    assert hub.transport.received(room, "exposureAlert") == []
    assert hub.pending.has_pending("Shared")

    visitor = hub.visitor("Shared")
    assert len(hub.transport.received(visitor, "exposureAlert")) == 1
    assert not hub.pending.has_pending("Shared")


def test_disconnect_closes_room_immediately(hub) -> None:
    cafe = hub.open("Cafe1")
    assert hub.router.tracker.is_open("Cafe1")

    hub.router.disconnect(cafe)
    assert not hub.router.tracker.is_open("Cafe1")
    assert hub.router.disconnect(cafe) is None

    # The stale membership goes on the next reconciliation pass.
    hub.router.reconcile()
    assert hub.groups.members("Cafe1") == set()


def test_reconnect_with_opened_state_reopens_room(hub) -> None:
    cafe = hub.open("Cafe1")
    hub.router.disconnect(cafe)

    result = hub.router.connect("room-Cafe1-b", KIND_ROOM, "Cafe1", state=STATE_OPENED)
    assert result["open"] is True
    assert hub.router.tracker.is_open("Cafe1")


def test_resumed_id_drops_old_memberships(hub) -> None:
    hub.open("Cafe1")
    ann = hub.visitor("Ann")
    hub.send(ann, "enterRoom", {"room": "Cafe1", "visitor": "Ann"})
    assert hub.groups.contains("Cafe1", ann)

    result = hub.router.connect(ann, KIND_VISITOR, "Ann")
    assert result["id"] == ann
    assert not hub.groups.contains("Cafe1", ann)


def test_events_from_unknown_connection_are_rejected(hub) -> None:
    ack = hub.send("ghost", "openRoom", {"room": "Cafe1"})
    assert ack["error"] == "InvalidPayload"


def test_unknown_event_is_rejected(hub) -> None:
    ann = hub.visitor("Ann")
    ack = hub.send(ann, "danceParty", {})
    assert ack == {
        "event": "danceParty",
        "error": "InvalidPayload",
        "message": "unknown event 'danceParty'",
    }


def test_open_rooms_broadcast_follows_open_and_close(hub) -> None:
    cafe = hub.open("Cafe1")
    exposed = [p for e, p in hub.transport.hub_wide if e == "openRoomsExposed"]
    assert exposed[-1] == [{"room": "Cafe1", "id": cafe}]

    hub.send(cafe, "closeRoom", {"room": "Cafe1"})
    exposed = [p for e, p in hub.transport.hub_wide if e == "openRoomsExposed"]
    assert exposed[-1] == []


def test_admin_queries(hub) -> None:
    cafe = hub.open("Cafe1")
    hub.room("Cafe2")
    ann = hub.visitor("Ann")
    hub.send(ann, "enterRoom", {"room": "Cafe1", "visitor": "Ann"})
    hub.send(ann, "exposureWarning", {"visitor": "Ann", "warnings": {"Cafe3": ["d"]}})
    ops = hub.admin()

    ack = hub.send(ops, "exposeOpenRooms", None)
    assert ack == {"event": "exposeOpenRooms", "result": [{"room": "Cafe1", "id": cafe}]}

    ack = hub.send(ops, "exposeAvailableRooms", None)
    assert sorted(r["room"] for r in ack["result"]) == ["Cafe1", "Cafe2"]

    ack = hub.send(ops, "exposeVisitorsRooms", None)
    assert [v["visitor"] for v in ack["result"]] == ["Ann"]

    ack = hub.send(ops, "exposePendingWarnings", None)
    assert list(ack["result"]) == ["Cafe3"]
    assert ack["result"]["Cafe3"][0]["kind"] == "room_warning"

    ack = hub.send(ops, "exposeAllSockets", None)
    by_id = {c["id"]: c for c in ack["result"]}
    assert by_id[ann]["occupiedRooms"] == ["Cafe1"]
    assert by_id[ops]["kind"] == "admin"

    ack = hub.send(ops, "pingServer", "hello")
    assert ack["result"] == "Server is at your disposal, hello"

    ack = hub.send(ops, "exposeStats", None)
    assert "open_rooms=1" in ack["result"]
    assert "deferred=1" in ack["result"]


def test_bounded_pending_drops_oldest(make_hub) -> None:
    hub = make_hub(max_pending=2)
    cafe = hub.open("Cafe1")
    for n in range(3):
        hub.send(cafe, "alertVisitor", {"visitor": "Ann", "message": [f"d{n}"]})

    ann = hub.visitor("Ann")
    alerts = hub.transport.received(ann, "exposureAlert")
    assert [a["exposureDates"] for a in alerts] == [["d1"], ["d2"]]


def test_unique_names_refuse_second_connection(make_hub) -> None:
    hub = make_hub(unique_names=True)
    hub.visitor("Ann")
    with pytest.raises(DuplicateIdentity):
        hub.visitor("Ann", cid="visitor-Ann-2")


def test_stats_counters_follow_routing(hub) -> None:
    cafe = hub.open("Cafe1")
    bob = hub.visitor("Bob")
    hub.send(bob, "exposureWarning", {"visitor": "Bob", "warnings": {"Cafe1": ["d"]}})
    hub.send(cafe, "alertVisitor", {"visitor": "Zed", "message": ["d"]})

    assert hub.stats.get("connects") == 2
    assert hub.stats.get("rooms_opened") == 1
    assert hub.stats.get("warned") == 1
    assert hub.stats.get("deferred") == 1


def test_room_closing_during_enter_refuses_the_visitor(hub) -> None:
    cafe = hub.open("Cafe1")
    ann = hub.visitor("Ann")

    lookup = hub.groups._get_or_create
    fired = []

    def close_after_lookup(room):
        group = lookup(room)
        if room == "Cafe1" and not fired:
            fired.append(True)
            hub.send(cafe, "closeRoom", {"room": "Cafe1"})
        return group

    hub.groups._get_or_create = close_after_lookup
    ack = hub.send(ann, "enterRoom", {"room": "Cafe1", "visitor": "Ann"})

    assert fired
    assert ack["error"] == "RoomNotOpen"
    assert not hub.groups.contains("Cafe1", ann)
    assert hub.stats.get("entries") == 0


def test_room_disconnect_before_enter_refuses_the_visitor(hub) -> None:
    cafe = hub.open("Cafe1")
    ann = hub.visitor("Ann")
    hub.router.disconnect(cafe)

    ack = hub.send(ann, "enterRoom", {"room": "Cafe1", "visitor": "Ann"})
    assert ack["error"] == "RoomNotOpen"
    assert not hub.groups.contains("Cafe1", ann)


def test_disconnect_all_closes_everyone_admin_last(hub) -> None:
    cafe = hub.open("Cafe1")
    ann = hub.visitor("Ann")
    ops = hub.admin()

    ack = hub.send(ops, "disconnectAll", None)
    assert ack == {"event": "disconnectAll", "result": 3}
    assert hub.registry.list_all() == []
    assert sorted(hub.transport.closed[:-1]) == sorted([cafe, ann])
    assert hub.transport.closed[-1] == ops
    assert not hub.router.tracker.is_open("Cafe1")


def test_disconnect_all_is_admin_only(hub) -> None:
    ann = hub.visitor("Ann")
    ack = hub.send(ann, "disconnectAll", None)
    assert ack["error"] == "InvalidPayload"
    assert hub.registry.is_live(ann)
    assert hub.transport.closed == []


def test_room_opening_while_reconcile_holds_its_warnings(hub) -> None:
    cafe = hub.room("Cafe1")
    bob = hub.visitor("Bob")
    hub.send(bob, "exposureWarning", {"visitor": "Bob", "warnings": {"Cafe1": ["d1"]}})

    # The room opens after reconcile has drained and tried it, but before
    # the entry is put back; the open's own flush sees an empty queue.
    requeue = hub.pending.requeue
    opened = []

    def open_then_requeue(key, entries):
        if not opened:
            opened.append(hub.send(cafe, "openRoom", {"room": "Cafe1"}))
        requeue(key, entries)

    hub.pending.requeue = open_then_requeue
    assert hub.router.reconcile() == 1
    assert opened[0]["flushed"] == 0
    assert len(hub.transport.received(cafe, "notifyRoom")) == 1
    assert not hub.pending.has_pending("Cafe1")


def test_visitor_arriving_while_reconcile_holds_alerts_gets_them_in_order(hub) -> None:
    cafe = hub.open("Cafe1")
    for dates in (["d1"], ["d2"]):
        hub.send(cafe, "alertVisitor", {"visitor": "Ann", "message": dates})

    requeue = hub.pending.requeue
    arrived = []

    def arrive_then_requeue(key, entries):
        if not arrived:
            arrived.append(hub.visitor("Ann"))
        requeue(key, entries)

    hub.pending.requeue = arrive_then_requeue
    assert hub.router.reconcile() == 2
    alerts = hub.transport.received(arrived[0], "exposureAlert")
    assert [a["exposureDates"] for a in alerts] == [["d1"], ["d2"]]
    assert hub.pending.total() == 0


def test_failed_send_is_not_retried_in_the_same_pass(hub) -> None:
    cafe = hub.open("Cafe1")
    ann = hub.visitor("Ann")
    hub.transport.fail_unicast.add(ann)
    hub.send(cafe, "alertVisitor", {"visitor": "Ann", "message": ["d1"]})

    drains = []
    drain = hub.pending.drain

    def counting_drain(key):
        drains.append(key)
        return drain(key)

    hub.pending.drain = counting_drain
    assert hub.router.flush("Ann") == 0
    assert drains == ["Ann"]
    assert hub.pending.has_pending("Ann")
