import threading

from vipnet.dns import IPUpdater
from vipnet.util import is_ip


class FakeVip:
    def __init__(self, name, current="192.0.2.10", fail_set=False):
        self.name = name
        self.current = current
        self.fail_set = fail_set
        self.set_calls = []
        self.add_calls = 0
        self.added = threading.Event()

    def dns_name(self):
        return self.name

    def ip(self):
        return self.current

    def set_ip(self, ip):
        self.set_calls.append(ip)
        if self.fail_set:
            raise ValueError("bad ip")

    def add_ip(self):
        self.add_calls += 1
        self.added.set()


def _run_once(vip):
    stop = threading.Event()
    thread = IPUpdater(vip, interval=0.01).run(stop)
    assert vip.added.wait(5)
    stop.set()
    thread.join(5)
    return thread


def test_resolved_name_is_set_and_added():
    vip = FakeVip("localhost")
    thread = _run_once(vip)
    assert not thread.is_alive()
    assert vip.set_calls
    assert all(is_ip(ip) for ip in vip.set_calls)
    assert vip.add_calls >= 1


def test_lookup_failure_renews_current_ip():
    vip = FakeVip("vip.nonexistent.invalid")
    _run_once(vip)
    assert vip.set_calls[0] == "192.0.2.10"


def test_set_ip_failure_still_adds_ip():
    vip = FakeVip("vip.nonexistent.invalid", fail_set=True)
    _run_once(vip)
    assert vip.add_calls >= 1
    assert vip.set_calls[0] == "192.0.2.10"


def test_stopped_before_start_does_nothing():
    vip = FakeVip("localhost")
    stop = threading.Event()
    stop.set()
    thread = IPUpdater(vip, interval=0.01).run(stop)
    thread.join(5)
    assert not thread.is_alive()
    assert vip.set_calls == []
    assert vip.add_calls == 0