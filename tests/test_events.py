from xec_engine.events import EventEmitter, EventType


def test_handlers_run_before_emit_returns():
    events = EventEmitter()
    seen = []
    events.on(EventType.SSH_CONNECT, lambda e: seen.append(e.data["host"]))

    event = events.emit(EventType.SSH_CONNECT, {"host": "10.0.0.5"}, source="ssh")

    assert seen == ["10.0.0.5"]
    assert event.event_type == "ssh:connect"
    assert event.source == "ssh"


def test_string_and_enum_keys_are_interchangeable():
    events = EventEmitter()
    seen = []
    events.on("tunnel:created", seen.append)

    events.emit(EventType.TUNNEL_CREATED, {"local_port": 5432})

    assert len(seen) == 1


def test_wildcard_and_off():
    events = EventEmitter()
    seen = []
    handler = events.on("*", lambda e: seen.append(e.event_type))

    events.emit(EventType.COMMAND_START)
    events.off("*", handler)
    events.emit(EventType.COMMAND_COMPLETE)

    assert seen == ["command:start"]
    assert events.listener_count("*") == 0


def test_once():
    events = EventEmitter()
    seen = []
    events.once(EventType.COMMAND_RETRY, seen.append)

    events.emit(EventType.COMMAND_RETRY, {"attempt": 1})
    events.emit(EventType.COMMAND_RETRY, {"attempt": 2})

    assert [e.data["attempt"] for e in seen] == [1]


def test_failing_handler_does_not_stop_others():
    events = EventEmitter()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    events.on(EventType.COMMAND_ERROR, broken)
    events.on(EventType.COMMAND_ERROR, seen.append)

    events.emit(EventType.COMMAND_ERROR, {"error": "x"})

    assert len(seen) == 1


def test_history_is_bounded_and_filterable():
    events = EventEmitter(history_size=3)
    for port in range(5):
        events.emit(EventType.TUNNEL_CLOSED, {"local_port": port})
    events.emit(EventType.COMMAND_START)

    assert [e.data["local_port"] for e in events.get_history(EventType.TUNNEL_CLOSED)] == [3, 4]
    assert len(events.get_history()) == 3
    assert events.get_stats()["total_events"] == 6


def test_event_to_dict():
    event = EventEmitter().emit(EventType.CONTAINER_CREATED, {"container": "xec-temp-1"}, source="docker")

    data = event.to_dict()

    assert data["event_type"] == "docker:container-created"
    assert data["data"] == {"container": "xec-temp-1"}
    assert data["event_id"].startswith("evt_")
