import threading

from compak.core.packages.router import Channel, MessageRouter


def test_messages_are_delivered_in_order(listener) -> None:
    router = MessageRouter()
    router.add_channel_listener(listener)

    out = router.out_writer()
    err = router.err_writer()
    for i in range(20):
        out.print(f"line {i}")
    err.write("problem\n")
    router.flush()

    assert listener.out == [f"line {i}\n" for i in range(20)]
    assert listener.err == ["problem\n"]
    assert router.is_running()
    router.terminate()


def test_dispatch_thread_is_lazy_and_terminate_is_idempotent(listener) -> None:
    router = MessageRouter()
    assert not router.is_running()

    router.add_channel_listener(listener)
    router.post(Channel.OUT, "hello\n")
    router.terminate()
    router.terminate()

    assert router.terminated
    assert not router.is_running()
    assert listener.out == ["hello\n"]


def test_terminate_without_use() -> None:
    router = MessageRouter()
    router.terminate()
    assert router.terminated


def test_messages_after_terminate_are_delivered_synchronously(listener) -> None:
    router = MessageRouter()
    router.add_channel_listener(listener)
    router.terminate()

    router.out_writer().print("late")

    assert listener.out == ["late\n"]


def test_listener_removal(listener) -> None:
    router = MessageRouter()
    router.add_channel_listener(listener)
    router.add_channel_listener(listener)
    assert router.listeners() == [listener]

    router.remove_channel_listener(listener)
    router.out_writer().print("unseen")
    router.flush()
    router.terminate()

    assert listener.out == []


def test_failing_listener_does_not_stop_delivery(listener) -> None:
    class Broken:
        def out_msg_posted(self, msg):
            raise RuntimeError("broken listener")

        def err_msg_posted(self, msg):
            raise RuntimeError("broken listener")

    router = MessageRouter()
    router.add_channel_listener(Broken())
    router.add_channel_listener(listener)
    router.out_writer().print("still here")
    router.flush()
    router.terminate()

    assert listener.out == ["still here\n"]


def test_concurrent_producers_and_listener_changes(listener) -> None:
    router = MessageRouter(max_queue_size=10)
    router.add_channel_listener(listener)

    def produce(n: int) -> None:
        writer = router.out_writer()
        for i in range(50):
            writer.print(f"{n}:{i}")

    class Other:
        def out_msg_posted(self, msg):
            pass

        def err_msg_posted(self, msg):
            pass

    threads = [threading.Thread(target=produce, args=(n,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for _ in range(50):
        other = Other()
        router.add_channel_listener(other)
        router.remove_channel_listener(other)
    for thread in threads:
        thread.join()
    router.flush()
    router.terminate()

    assert len(listener.out) == 200
    for n in range(4):
        mine = [msg for msg in listener.out if msg.startswith(f"{n}:")]
        assert mine == [f"{n}:{i}\n" for i in range(50)]
