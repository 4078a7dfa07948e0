"""Networking helpers: LAN address discovery and client IP resolution."""

import ipaddress
import socket
from typing import Iterator, Mapping, Optional

import psutil

from . import config


_VPN_IFACE_HINTS = ("vpn", "tun", "tap", "wireguard", "wg", "tailscale", "zerotier", "utun", "ppp")
_MAPPED_V4_PREFIX = "::ffff:"


def _probe_route_ip() -> str:
    """Return best-effort IPv4 from default route probing."""
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect(("10.255.255.255", 1))
        return str(s.getsockname()[0] or "127.0.0.1")
    except Exception:
        return "127.0.0.1"
    finally:
        s.close()


def _score_ipv4_candidate(ip: str, iface_name: str) -> int:
    """Return quality score for IPv4 candidate; negative means unusable."""
    try:
        addr = ipaddress.ip_address(str(ip or "").strip())
    except ValueError:
        return -1
    if not isinstance(addr, ipaddress.IPv4Address):
        return -1
    if addr.is_loopback or addr.is_link_local:
        return -1
    score = 50
    if addr.is_private:
        score += 60
    name = str(iface_name or "").lower()
    if any(h in name for h in _VPN_IFACE_HINTS):
        score -= 40
    return score


def _iter_lan_ipv4() -> Iterator[str]:
    """Yield non-loopback IPv4 addresses of active interfaces ordered by score."""
    try:
        by_iface = psutil.net_if_addrs() or {}
    except Exception:
        by_iface = {}
    try:
        stats = psutil.net_if_stats() or {}
    except Exception:
        stats = {}

    ranked: list[tuple[int, str]] = []
    for iface_name, entries in by_iface.items():
        st = stats.get(iface_name)
        if st is not None and not bool(getattr(st, "isup", False)):
            continue
        for entry in entries or []:
            if getattr(entry, "family", None) != socket.AF_INET:
                continue
            ip = str(getattr(entry, "address", "") or "").strip()
            score = _score_ipv4_candidate(ip, str(iface_name or ""))
            if score >= 0:
                ranked.append((score, ip))

    ranked.sort(key=lambda item: item[0], reverse=True)
    seen = set()
    for _score, ip in ranked:
        if ip in seen:
            continue
        seen.add(ip)
        yield ip


def get_local_ip() -> str:
    """Return the host's LAN IPv4 address, falling back to loopback."""
    for ip in _iter_lan_ipv4():
        return ip
    return _probe_route_ip()


def normalize_ip(raw: Optional[str]) -> str:
    """Strip whitespace and the IPv4-mapped IPv6 prefix."""
    ip = str(raw or "").strip()
    if ip.lower().startswith(_MAPPED_V4_PREFIX):
        ip = ip[len(_MAPPED_V4_PREFIX):]
    return ip


def resolve_client_ip(headers: Mapping[str, str], peer: Optional[str]) -> str:
    """Resolve the real client IP: trusted proxy header, then X-Forwarded-For, then peer."""
    trusted = str(config.TRUSTED_PROXY_HEADER or "").strip().lower()
    if trusted:
        value = normalize_ip(headers.get(trusted))
        if value:
            return value
    if config.TRUST_FORWARDED_FOR:
        forwarded = str(headers.get("x-forwarded-for") or "")
        first = normalize_ip(forwarded.split(",", 1)[0])
        if first:
            return first
    return normalize_ip(peer)


def is_tunnel_request(headers: Mapping[str, str]) -> bool:
    """Return True when the request arrived through the public tunnel."""
    trusted = str(config.TRUSTED_PROXY_HEADER or "").strip().lower()
    if trusted and str(headers.get(trusted) or "").strip():
        return True
    host = str(headers.get("host") or "").strip().lower()
    return any(suffix and suffix.lower() in host for suffix in config.TUNNEL_HOST_SUFFIXES)
