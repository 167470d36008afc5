"""
Cast Device Discovery - mDNS browse with port-probe fallback

Discovery is one two-strategy pipeline:

    (a) MdnsDiscoveryStrategy   passive: browse _googlecast._tcp.local.
    (b) PortProbeStrategy       active: TCP connect to port 8009 on every
                                host of the local /24 subnets

(b) only runs when (a) found nothing or failed; results are never merged.
Every device found is reconciled into the registry by address.

Usage:
    discovery = DeviceDiscovery(registry, notifier)
    devices = discovery.discover(timeout=5.0)
    discovery.close()
"""

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional, Tuple
import ipaddress
import logging
import socket
import threading
import time

import psutil
from zeroconf import ServiceBrowser, ServiceListener, Zeroconf

from .notifier import EventNotifier, EventType
from .registry import DeviceRegistry
from .types import DEFAULT_CAST_PORT, DiscoveredDevice, DiscoverySource

logger = logging.getLogger(__name__)

# Constants
CAST_SERVICE_TYPE = "_googlecast._tcp.local."
DEFAULT_DISCOVERY_TIMEOUT_S = 5.0
DEFAULT_PROBE_TIMEOUT_S = 1.0
DEFAULT_PROBE_WORKERS = 64
SERVICE_INFO_TIMEOUT_MS = 2000
MAX_MDNS_RESOLVERS = 16
MAX_PREFIX = 24


class DiscoveryStrategy(ABC):
    """One way of finding devices on the local network."""

    source: DiscoverySource

    @abstractmethod
    def find(self, timeout: float) -> List[DiscoveredDevice]:
        pass

    def close(self) -> None:
        pass


# ============================================================
# (a) mDNS
# ============================================================

class _CastServiceCollector(ServiceListener):
    """Collects announced service names while the browser runs."""

    def __init__(self):
        self.names: List[str] = []
        self.lock = threading.Lock()

    def add_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        with self.lock:
            if name not in self.names:
                self.names.append(name)

    def update_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        self.add_service(zc, type_, name)

    def remove_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        pass


class MdnsDiscoveryStrategy(DiscoveryStrategy):
    """
    Browse Cast advertisements for the whole timeout window, then
    resolve the announced services concurrently to address, port and
    friendly name, so silent services cost one service-info timeout
    together rather than one each.
    """

    source = DiscoverySource.MDNS

    def __init__(self, zeroconf_factory: Callable[[], Zeroconf] = Zeroconf,
                 sleep: Callable[[float], None] = time.sleep,
                 max_resolvers: int = MAX_MDNS_RESOLVERS):
        self.zeroconf_factory = zeroconf_factory
        self.sleep = sleep
        self.max_resolvers = max_resolvers
        self._zc: Optional[Zeroconf] = None
        self._lock = threading.Lock()

    def _zeroconf(self) -> Zeroconf:
        with self._lock:
            if self._zc is None:
                self._zc = self.zeroconf_factory()
            return self._zc

    def _resolve(self, zc: Zeroconf, name: str) -> Optional[DiscoveredDevice]:
        info = zc.get_service_info(CAST_SERVICE_TYPE, name, timeout=SERVICE_INFO_TIMEOUT_MS)
        if info is None:
            logger.debug(f"mDNS: could not resolve {name}")
            return None
        addresses = info.parsed_addresses()
        if not addresses:
            return None
        props = info.properties or {}
        friendly = props.get(b"fn")
        if isinstance(friendly, bytes):
            friendly = friendly.decode("utf-8", errors="replace")
        return DiscoveredDevice(
            name=friendly or name.split(".")[0],
            address=addresses[0],
            port=info.port or DEFAULT_CAST_PORT,
            host=(info.server or "").rstrip(".") or None,
            source=self.source,
        )

    def find(self, timeout: float) -> List[DiscoveredDevice]:
        zc = self._zeroconf()
        collector = _CastServiceCollector()
        browser = ServiceBrowser(zc, CAST_SERVICE_TYPE, collector)
        try:
            self.sleep(timeout)
        finally:
            browser.cancel()

        with collector.lock:
            names = list(collector.names)

        devices = []
        if names:
            workers = max(1, min(self.max_resolvers, len(names)))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                for device in pool.map(lambda n: self._resolve(zc, n), names):
                    if device is not None:
                        devices.append(device)
        logger.info(f"mDNS discovery found {len(devices)} device(s)")
        return devices

    def close(self) -> None:
        with self._lock:
            if self._zc is not None:
                self._zc.close()
                self._zc = None


# ============================================================
# (b) Port probe
# ============================================================

def local_ipv4_subnets() -> List[Tuple[str, ipaddress.IPv4Network]]:
    """
    IPv4 subnets of the non-loopback interfaces.

    Subnets wider than /24 are narrowed to the /24 holding the
    interface address.
    """
    subnets = []
    for iface, addrs in psutil.net_if_addrs().items():
        for snic in addrs:
            if snic.family != socket.AF_INET or not snic.address or not snic.netmask:
                continue
            try:
                net = ipaddress.ip_network(f"{snic.address}/{snic.netmask}", strict=False)
            except ValueError:
                continue
            if net.is_loopback:
                continue
            if net.prefixlen < MAX_PREFIX:
                net = ipaddress.ip_network(f"{snic.address}/{MAX_PREFIX}", strict=False)
            logger.debug(f"Probe subnet {net} on {iface}")
            subnets.append((snic.address, net))
    return subnets


def tcp_probe(address: str, port: int, timeout: float) -> bool:
    try:
        with socket.create_connection((address, port), timeout=timeout):
            return True
    except OSError:
        return False


class PortProbeStrategy(DiscoveryStrategy):
    """TCP connect scan for the Cast control port."""

    source = DiscoverySource.PORT_PROBE

    def __init__(self, port: int = DEFAULT_CAST_PORT,
                 probe_timeout: float = DEFAULT_PROBE_TIMEOUT_S,
                 max_workers: int = DEFAULT_PROBE_WORKERS,
                 subnets: Callable[[], Iterable[Tuple[str, ipaddress.IPv4Network]]] = local_ipv4_subnets,
                 probe: Callable[[str, int, float], bool] = tcp_probe):
        self.port = port
        self.probe_timeout = probe_timeout
        self.max_workers = max_workers
        self.subnets = subnets
        self.probe = probe

    def _targets(self) -> List[str]:
        seen = set()
        targets = []
        for _, net in self.subnets():
            for host in net.hosts():
                addr = str(host)
                if addr not in seen:
                    seen.add(addr)
                    targets.append(addr)
        return targets

    def find(self, timeout: float) -> List[DiscoveredDevice]:
        targets = self._targets()
        if not targets:
            logger.warning("Port probe: no IPv4 interfaces to scan")
            return []

        logger.info(f"Port probe: scanning {len(targets)} address(es) on port {self.port}")
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="cast-probe") as pool:
            results = list(pool.map(lambda a: (a, self.probe(a, self.port, self.probe_timeout)), targets))

        devices = [
            DiscoveredDevice(
                name=f"Chromecast-{addr.rsplit('.', 1)[-1]}",
                address=addr,
                port=self.port,
                source=self.source,
            )
            for addr, reachable in results if reachable
        ]
        logger.info(f"Port probe found {len(devices)} device(s)")
        return devices


# ============================================================
# Pipeline
# ============================================================

class DeviceDiscovery:
    """
    Two-strategy discovery pipeline feeding the device registry.

    Attributes:
        registry: Where found devices are reconciled
        notifier: Receives devices_found
        primary: Passive strategy, always tried first
        fallback: Active strategy, only tried when primary finds nothing
    """

    def __init__(self, registry: DeviceRegistry, notifier: EventNotifier,
                 primary: Optional[DiscoveryStrategy] = None,
                 fallback: Optional[DiscoveryStrategy] = None,
                 default_timeout: float = DEFAULT_DISCOVERY_TIMEOUT_S):
        self.registry = registry
        self.notifier = notifier
        self.primary = primary or MdnsDiscoveryStrategy()
        self.fallback = fallback or PortProbeStrategy()
        self.default_timeout = default_timeout
        self._scan_lock = threading.Lock()

    def _run(self, strategy: DiscoveryStrategy, timeout: float) -> List[DiscoveredDevice]:
        try:
            return strategy.find(timeout)
        except Exception as e:
            logger.warning(f"{strategy.source.value} discovery failed: {e}")
            return []

    def discover(self, timeout: Optional[float] = None) -> List[DiscoveredDevice]:
        """
        Find devices on the LAN and reconcile them into the registry.

        Returns:
            Devices found by this call, deduplicated by (address, port).
            An empty list is a normal result.
        """
        timeout = self.default_timeout if timeout is None else timeout
        with self._scan_lock:
            found = self._run(self.primary, timeout)
            if not found:
                logger.info("No devices via mDNS, falling back to port probe")
                found = self._run(self.fallback, timeout)

            unique: Dict[tuple, DiscoveredDevice] = {}
            for device in found:
                unique.setdefault(device.key, device)
            devices = list(unique.values())

            announced = []
            for device in devices:
                row, _ = self.registry.reconcile(device)
                entry = device.to_dict()
                entry["id"] = row.id
                announced.append(entry)

        self.notifier.publish(EventType.DEVICES_FOUND, {"devices": announced})
        logger.info(f"Discovery complete: {len(devices)} device(s)")
        return devices

    def close(self) -> None:
        self.primary.close()
        self.fallback.close()
