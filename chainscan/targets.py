from __future__ import annotations

import ipaddress
import logging
import socket
from typing import Dict, List, Optional, Sequence

import dns.exception
import dns.resolver

from .errors import ConfigError, ResolutionError
from .log import log_event
from .models import ScanTarget

logger = logging.getLogger(__name__)

GOOGLE_DNS = ("8.8.8.8", "8.8.4.4")
CLOUDFLARE_DNS = ("1.1.1.1", "1.0.0.1")

DEFAULT_DNS_TIMEOUT_S = 2.0


class Resolver:
    """name -> addresses. Raise on failure, return [] when the name has no addresses."""

    name = "resolver"

    def lookup(self, host: str) -> List[str]:
        raise NotImplementedError


class DnsResolver(Resolver):
    def __init__(self, nameservers: Sequence[str], timeout_s: float = DEFAULT_DNS_TIMEOUT_S, name: Optional[str] = None):
        if not nameservers:
            raise ConfigError("DNS resolver needs at least one nameserver")
        for ns in nameservers:
            try:
                ipaddress.ip_address(ns)
            except ValueError as e:
                raise ConfigError(f"Invalid nameserver address: {ns!r}") from e
        self.nameservers = list(nameservers)
        self.timeout_s = timeout_s
        self.name = name or ",".join(self.nameservers)

    def _resolver(self) -> dns.resolver.Resolver:
        r = dns.resolver.Resolver(configure=False)
        r.nameservers = list(self.nameservers)
        r.timeout = self.timeout_s
        r.lifetime = self.timeout_s * 2
        return r

    def lookup(self, host: str) -> List[str]:
        resolver = self._resolver()
        addresses: List[str] = []
        last_error: Optional[dns.exception.DNSException] = None
        for rdtype in ("A", "AAAA"):
            try:
                answers = resolver.resolve(host, rdtype)
            except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN):
                continue
            except dns.exception.DNSException as e:
                # SERVFAIL/timeout on one type must not discard the other
                last_error = e
                continue
            addresses.extend(r.address for r in answers)
        if not addresses and last_error is not None:
            raise last_error
        return addresses


class SystemResolver(Resolver):
    """The host's own resolver (/etc/hosts, nsswitch, ...)."""

    name = "system"

    def lookup(self, host: str) -> List[str]:
        infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
        seen: List[str] = []
        for _family, _type, _proto, _canon, sockaddr in infos:
            addr = sockaddr[0]
            if addr not in seen:
                seen.append(addr)
        return seen


def resolver_from_spec(spec: str, timeout_s: float = DEFAULT_DNS_TIMEOUT_S) -> Resolver:
    """
    Accepts:
      - "google" / "cloudflare"
      - "system"
      - "9.9.9.9" or "9.9.9.9,149.112.112.112"
    """
    key = spec.strip().lower()
    if key == "google":
        return DnsResolver(GOOGLE_DNS, timeout_s, name="google")
    if key == "cloudflare":
        return DnsResolver(CLOUDFLARE_DNS, timeout_s, name="cloudflare")
    if key == "system":
        return SystemResolver()
    servers = [s.strip() for s in spec.split(",") if s.strip()]
    return DnsResolver(servers, timeout_s)


def parse_literal(host: str) -> Optional[str]:
    try:
        return str(ipaddress.ip_address(host.strip("[]")))
    except ValueError:
        return None


def resolve_target(
    host: str,
    primary: Optional[Resolver] = None,
    fallback: Optional[Resolver] = None,
) -> ScanTarget:
    """
    Literal IPv4/IPv6 addresses are returned as-is without any lookup.
    Hostnames go to the primary resolver, then once to the fallback.
    """
    host = host.strip()
    if not host:
        raise ConfigError("Empty target")

    literal = parse_literal(host)
    if literal:
        return ScanTarget(host=host, address=literal)

    if primary is None:
        primary = DnsResolver(GOOGLE_DNS, name="google")
    if fallback is None:
        fallback = DnsResolver(CLOUDFLARE_DNS, name="cloudflare")

    failures: Dict[str, str] = {}
    for i, resolver in enumerate((primary, fallback)):
        if i == 1:
            log_event(logger, "resolve_fallback", {"host": host, "resolver": resolver.name}, logging.DEBUG)
        try:
            addresses = resolver.lookup(host)
        except (dns.exception.DNSException, OSError) as e:
            failures[resolver.name] = str(e) or e.__class__.__name__
            continue
        if not addresses:
            failures[resolver.name] = "no addresses"
            continue
        address = addresses[0]
        log_event(logger, "resolve_ok", {"host": host, "address": address, "resolver": resolver.name})
        return ScanTarget(host=host, address=address)

    raise ResolutionError(host, failures)
