"""Periodic re-resolution of a DNS-named VIP."""

from __future__ import annotations

import logging
import threading

from vipnet.util import lookup_host

log = logging.getLogger(__name__)


class IPUpdater:
    """Keeps a DNS-named VIP pointed at the address its name resolves to."""

    def __init__(self, vip, interval: float = 3.0) -> None:
        self._vip = vip
        self._interval = interval

    def _refresh(self) -> None:
        name = self._vip.dns_name()
        try:
            ip = lookup_host(name)
        except (OSError, LookupError) as exc:
            log.warning("cannot lookup %s: %s", name, exc)
            try:
                ip = self._vip.ip()
            except ValueError as err:
                log.error("no address to renew for %s: %s", name, err)
                return

        log.info("setting %s as an IP", ip)
        try:
            self._vip.set_ip(ip)
        except (OSError, ValueError) as exc:
            log.error("setting %s as an IP: %s", ip, exc)

        try:
            self._vip.add_ip()
        except (OSError, RuntimeError, ValueError) as exc:
            log.error("error adding virtual IP: %s", exc)

    def _loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            self._refresh()
            stop_event.wait(self._interval)
        log.info("stop ipUpdater")

    def run(self, stop_event: threading.Event) -> threading.Thread:
        """Start refreshing in a background thread until ``stop_event`` is set."""
        thread = threading.Thread(target=self._loop, args=(stop_event,), daemon=True)
        thread.start()
        return thread