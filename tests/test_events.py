"""リスナー登録のテスト"""

import threading

from flagsync.events import CallbackRegistry, EventHub, ListenerRegistry


def test_emit_notifies_all_listeners() -> None:
    """登録済みの全リスナーに通知されること。"""
    registry: ListenerRegistry[int] = ListenerRegistry()
    received: list[tuple[str, int]] = []
    registry.register(lambda v: received.append(("a", v)))
    registry.register(lambda v: received.append(("b", v)))
    registry.emit(7)
    assert received == [("a", 7), ("b", 7)]


def test_unsubscribe_is_idempotent() -> None:
    """解除は何度呼んでもよいこと。"""
    registry: ListenerRegistry[int] = ListenerRegistry()
    received: list[int] = []
    unsubscribe = registry.register(received.append)
    unsubscribe()
    unsubscribe()
    registry.emit(1)
    assert received == []
    assert len(registry) == 0


def test_unsubscribe_during_emit_does_not_affect_current_emit() -> None:
    """emit 開始時のリスナーには最後まで通知されること。"""
    registry: ListenerRegistry[int] = ListenerRegistry()
    received: list[str] = []
    handles = {}

    def first(_: int) -> None:
        received.append("first")
        handles["second"]()

    handles["first"] = registry.register(first)
    handles["second"] = registry.register(lambda _: received.append("second"))

    registry.emit(1)
    assert received == ["first", "second"]
    registry.emit(2)
    assert received == ["first", "second", "first"]


def test_register_during_emit_applies_to_next_emit() -> None:
    """emit 中の登録は次回の emit から反映されること。"""
    registry: ListenerRegistry[int] = ListenerRegistry()
    received: list[str] = []

    def add_more(_: int) -> None:
        received.append("outer")
        registry.register(lambda _: received.append("inner"))

    registry.register(add_more)
    registry.emit(1)
    assert received == ["outer"]


def test_listener_errors_are_swallowed() -> None:
    """リスナーの例外は握りつぶされ、他のリスナーに影響しないこと。"""
    registry: ListenerRegistry[int] = ListenerRegistry("test")
    received: list[int] = []

    def boom(_: int) -> None:
        raise RuntimeError("boom")

    registry.register(boom)
    registry.register(received.append)
    registry.emit(3)
    assert received == [3]


def test_callback_registry() -> None:
    """引数なしコールバックの登録と通知。"""
    registry = CallbackRegistry()
    calls: list[str] = []
    unsubscribe = registry.register(lambda: calls.append("x"))
    registry.emit()
    unsubscribe()
    registry.emit()
    assert calls == ["x"]


def test_concurrent_register_and_emit() -> None:
    """並行して登録と通知を行っても例外が発生しないこと。"""
    registry: ListenerRegistry[int] = ListenerRegistry()
    count = 0
    lock = threading.Lock()

    def listener(_: int) -> None:
        nonlocal count
        with lock:
            count += 1

    def churn() -> None:
        for _ in range(200):
            registry.register(listener)()

    threads = [threading.Thread(target=churn) for _ in range(4)]
    for t in threads:
        t.start()
    for _ in range(200):
        registry.emit(0)
    for t in threads:
        t.join()
    assert len(registry) == 0


def test_event_hub_clear() -> None:
    """clear で全チャネルのリスナーが外れること。"""
    hub = EventHub()
    hub.config_change.register(lambda _: None)
    hub.ready.register(lambda: None)
    hub.clear()
    assert len(hub.config_change) == 0
    assert len(hub.ready) == 0
