"""
OAP Key Resolution

Resolves a key identifier (kid) or a VC verification method to a 32-byte
Ed25519 public key.

kid shapes:
- oap:registry:<id>          -> <registry base>/.well-known/oap/keys.json
- oap:owner:<domain>:<id>    -> https://<domain>/.well-known/oap/keys.json

Results are cached with a bounded TTL independent of the key's own exp.
Concurrent misses for one kid share a single in-flight fetch. A failed or
abandoned fetch is never cached.
"""

import logging
import re
import threading
import time
from typing import Any, Callable, Dict, Iterable, Optional, Tuple
from urllib.parse import unquote

import requests

from . import config
from .errors import KeyExpired, KeyNotFound, KeyRevoked, KeyUnreachable, KeyUnresolvable
from .logging_config import audit_log
from .signing import KeyInput, RegistryKey, load_public_key
from .util import b58decode, b58encode, b64url_decode

logger = logging.getLogger(__name__)

KEY_SET_PATH = "/.well-known/oap/keys.json"
ED25519_MULTICODEC = b"\xed\x01"
DOMAIN_PATTERN = re.compile(r'^[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*(?::[0-9]{1,5})?$')

FetchJson = Callable[[str, float], Any]


def requests_fetch_json(url: str, timeout: float) -> Any:
    """Default fetcher: one HTTP GET with a timeout."""
    response = requests.get(url, timeout=timeout, headers={"Accept": "application/json"})
    response.raise_for_status()
    return response.json()


class KeyCache:
    """
    Thread-safe cache of resolved public keys.

    Entries live for ``ttl_seconds`` or until the key's own exp,
    whichever comes first. ``clock`` returns unix seconds.
    """

    def __init__(self, ttl_seconds: float = 300, clock: Callable[[], float] = time.time):
        self._entries: Dict[str, Tuple[bytes, float]] = {}
        self._lock = threading.RLock()
        self.ttl = ttl_seconds
        self.clock = clock

    def get(self, key_id: str) -> Optional[bytes]:
        with self._lock:
            entry = self._entries.get(key_id)
            if entry is None:
                return None
            public_key, expires_at = entry
            if self.clock() >= expires_at:
                del self._entries[key_id]
                return None
            return public_key

    def put(self, key_id: str, public_key: bytes, key_exp: Optional[float] = None) -> None:
        expires_at = self.clock() + self.ttl
        if key_exp is not None:
            expires_at = min(expires_at, key_exp)
        with self._lock:
            self._entries[key_id] = (public_key, expires_at)

    def invalidate(self, key_id: str) -> None:
        with self._lock:
            self._entries.pop(key_id, None)

    def invalidate_kid(self, kid: str) -> None:
        """Drop ``kid`` and every ``<source>#<kid>`` entry."""
        suffix = "#" + kid
        with self._lock:
            for key_id in [k for k in self._entries if k == kid or k.endswith(suffix)]:
                del self._entries[key_id]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key_id: str) -> bool:
        return self.get(key_id) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class _InFlight:
    """One outstanding fetch that concurrent callers wait on."""

    def __init__(self):
        self.done = threading.Event()
        self.public_key: Optional[bytes] = None
        self.error: Optional[BaseException] = None


class KeyResolver:
    """
    Resolve kids and verification methods to Ed25519 public keys.

    Args:
        registry_base_url: base URL for oap:registry:* kids
        cache: KeyCache instance (a fresh one per resolver by default)
        fetch_json: callable(url, timeout) returning parsed JSON
        timeout: per-attempt fetch timeout in seconds
        retries: retries after the first failed attempt
    """

    def __init__(
        self,
        registry_base_url: Optional[str] = None,
        cache: Optional[KeyCache] = None,
        fetch_json: Optional[FetchJson] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        static_keys: Optional[Dict[str, KeyInput]] = None
    ):
        self.registry_base_url = (registry_base_url or config.REGISTRY_ISSUER).rstrip("/")
        self.cache = cache if cache is not None else KeyCache(config.KEY_CACHE_TTL)
        self.timeout = config.KEY_FETCH_TIMEOUT if timeout is None else timeout
        self.retries = config.KEY_FETCH_RETRIES if retries is None else retries
        self._fetch_json = fetch_json or requests_fetch_json
        self._lock = threading.Lock()
        self._in_flight: Dict[str, _InFlight] = {}
        self._revoked = set()
        self._static: Dict[str, bytes] = {}
        for kid, public_key in (static_keys or {}).items():
            self.register_key(kid, public_key)

    # ------------------------------------------------------------
    # Registration and revocation
    # ------------------------------------------------------------

    def register_key(self, kid: str, public_key: KeyInput) -> None:
        """Pin a key locally; pinned keys are never fetched."""
        with self._lock:
            self._static[kid] = load_public_key(public_key)

    def register_registry_key(self, registry_key: RegistryKey) -> None:
        self.register_key(registry_key.kid, registry_key.public_key)

    def revoke(self, kid: str) -> None:
        """Handle a revocation signal: evict now and refuse until unrevoked."""
        with self._lock:
            self._revoked.add(kid)
            self._static.pop(kid, None)
        self.cache.invalidate_kid(kid)
        audit_log.security_event("key_revoked", severity="high", kid=kid)

    def unrevoke(self, kid: str) -> None:
        with self._lock:
            self._revoked.discard(kid)

    def is_revoked(self, kid: str) -> bool:
        with self._lock:
            return kid in self._revoked

    def invalidate(self, kid: Optional[str] = None) -> None:
        """Drop one cached key, or every cached key."""
        if kid is None:
            self.cache.clear()
        else:
            self.cache.invalidate_kid(kid)

    # ------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------

    def resolve(self, kid: str, public_key: Optional[KeyInput] = None) -> bytes:
        """
        Resolve ``kid`` to a 32-byte public key.

        An explicit ``public_key`` wins over any lookup.

        Raises:
            KeyNotFound, KeyUnreachable, KeyExpired, KeyRevoked
        """
        if public_key is not None:
            try:
                return load_public_key(public_key)
            except ValueError as e:
                raise KeyNotFound(kid, f"explicit key is malformed: {e}") from None

        url = self.key_set_url(kid)
        return self._resolve_cached(
            f"{url}#{kid}", lambda: self._fetch_from_key_set(kid, url), kid=kid
        )

    def resolve_verification_method(self, verification_method: str) -> bytes:
        """
        Resolve a VC verification method.

        Supports <base>/.well-known/oap/keys.json#<kid>, did:key and did:web.
        """
        vm = verification_method
        if not isinstance(vm, str) or not vm:
            raise KeyNotFound(str(vm), "empty verification method")

        if vm.startswith("did:key:"):
            if self.is_revoked(vm):
                raise KeyRevoked(vm)
            return did_key_public_key(vm)

        if vm.startswith("did:web:"):
            return self._resolve_cached(vm, lambda: self._fetch_from_did_web(vm))

        base, _, kid = vm.partition("#")
        if base.endswith(KEY_SET_PATH) and kid:
            if not base.startswith("https://") and not base.startswith("http://"):
                raise KeyNotFound(vm, "key set URL must be http(s)")
            return self._resolve_cached(
                vm, lambda: self._fetch_from_key_set(kid, base), kid=kid,
                pinned=base == self._own_key_set_url(kid)
            )

        raise KeyNotFound(vm, "unsupported verification method")

    def key_set_url(self, kid: str) -> str:
        """Map a kid to the key-set document that publishes it."""
        if not isinstance(kid, str):
            raise KeyNotFound(str(kid), "kid must be a string")
        parts = kid.split(":")
        if len(parts) >= 3 and parts[0] == "oap" and parts[1] == "registry" and parts[2]:
            return self.registry_base_url + KEY_SET_PATH
        if len(parts) >= 4 and parts[0] == "oap" and parts[1] == "owner" and parts[3]:
            domain = parts[2]
            if not DOMAIN_PATTERN.match(domain):
                raise KeyNotFound(kid, f"invalid owner domain {domain}")
            return f"https://{domain}{KEY_SET_PATH}"
        raise KeyNotFound(kid, "unsupported kid format")

    def _own_key_set_url(self, kid: str) -> Optional[str]:
        try:
            return self.key_set_url(kid)
        except KeyNotFound:
            return None

    def _resolve_cached(
        self,
        cache_key: str,
        load: Callable[[], Tuple[bytes, Optional[float]]],
        kid: Optional[str] = None,
        pinned: bool = True
    ) -> bytes:
        """
        Serve ``cache_key`` from pins, cache or a single shared fetch.

        Fetched keys are cached under their source (key-set URL plus kid),
        so the same kid published by two hosts never shares an entry.
        Revocation and pins are by ``kid``; pins apply only when the
        source is the key set the kid itself maps to.
        """
        key_id = kid or cache_key
        with self._lock:
            if key_id in self._revoked:
                raise KeyRevoked(key_id)
            pinned_key = self._static.get(key_id) if pinned else None
        if pinned_key is not None:
            return pinned_key

        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        with self._lock:
            flight = self._in_flight.get(cache_key)
            owner = flight is None
            if owner:
                flight = _InFlight()
                self._in_flight[cache_key] = flight

        if not owner:
            return self._wait_for(key_id, flight)

        try:
            public_key, key_exp = load()
            with self._lock:
                if key_id in self._revoked:
                    raise KeyRevoked(key_id, "revoked during fetch")
                self.cache.put(cache_key, public_key, key_exp)
            flight.public_key = public_key
            audit_log.key_resolved(cache_key, "fetch")
            return public_key
        except BaseException as e:
            flight.error = e
            reason = e.reason if isinstance(e, KeyUnresolvable) else type(e).__name__
            audit_log.key_resolution_failed(cache_key, reason)
            raise
        finally:
            with self._lock:
                self._in_flight.pop(cache_key, None)
            flight.done.set()

    def _wait_for(self, key_id: str, flight: _InFlight) -> bytes:
        wait_seconds = self.timeout * (self.retries + 1)
        if not flight.done.wait(wait_seconds):
            raise KeyUnreachable(key_id, f"in-flight fetch exceeded {wait_seconds}s")

        error = flight.error
        if error is None:
            return flight.public_key
        if isinstance(error, KeyUnresolvable):
            raise type(error)(key_id, error.detail)
        raise KeyUnreachable(key_id, f"in-flight fetch failed: {type(error).__name__}") from error

    # ------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------

    def _fetch_document(self, key_id: str, url: str) -> Any:
        last_error: Optional[Exception] = None
        for attempt in range(self.retries + 1):
            try:
                return self._fetch_json(url, self.timeout)
            except requests.HTTPError as e:
                status = e.response.status_code if e.response is not None else None
                if status in (404, 410):
                    raise KeyNotFound(key_id, f"{url} returned {status}") from e
                last_error = e
            except (requests.RequestException, ValueError) as e:
                last_error = e
            logger.debug("Key fetch attempt %d for %s failed: %s", attempt + 1, url, last_error)

        raise KeyUnreachable(key_id, f"{url}: {last_error}") from last_error

    def _fetch_from_key_set(self, kid: str, url: str) -> Tuple[bytes, Optional[float]]:
        document = self._fetch_document(kid, url)
        return select_key(document, kid, now=self.cache.clock())

    def _fetch_from_did_web(self, vm: str) -> Tuple[bytes, Optional[float]]:
        did, _, fragment = vm.partition("#")
        document = self._fetch_document(vm, did_web_url(did))
        return select_did_verification_method(document, did, fragment, vm), None


def select_key(document: Any, kid: str, now: Optional[float] = None) -> Tuple[bytes, Optional[float]]:
    """
    Pick ``kid`` out of a key-set document and validate it.

    Returns (public_key, exp) where exp is unix seconds or None.
    """
    keys = document.get("keys") if isinstance(document, dict) else None
    if not isinstance(keys, list):
        raise KeyNotFound(kid, "key set has no keys array")

    entry = next((k for k in keys if isinstance(k, dict) and k.get("kid") == kid), None)
    if entry is None:
        raise KeyNotFound(kid, "kid not present in key set")

    if entry.get("kty") != "OKP" or entry.get("crv") != "Ed25519":
        raise KeyNotFound(kid, "entry is not an Ed25519 OKP key")
    if entry.get("alg", "EdDSA") != "EdDSA" or entry.get("use", "sig") != "sig":
        raise KeyNotFound(kid, "entry is not an EdDSA signing key")

    try:
        public_key = b64url_decode(entry.get("x", ""))
    except (ValueError, AttributeError):
        raise KeyNotFound(kid, "x is not base64url") from None
    if len(public_key) != 32:
        raise KeyNotFound(kid, "x is not a 32-byte Ed25519 key")

    exp = entry.get("exp")
    if exp is not None:
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise KeyNotFound(kid, "exp must be a unix timestamp")
        if exp <= (time.time() if now is None else now):
            raise KeyExpired(kid, f"expired at {exp}")
    return public_key, exp


def did_key_public_key(did: str) -> bytes:
    """Decode did:key:z... (ed25519-pub multicodec) without any network call."""
    identifier = did.partition("#")[0][len("did:key:"):]
    if not identifier.startswith("z"):
        raise KeyNotFound(did, "did:key must use base58btc multibase")
    try:
        raw = b58decode(identifier[1:])
    except ValueError:
        raise KeyNotFound(did, "did:key is not base58btc") from None
    if not raw.startswith(ED25519_MULTICODEC) or len(raw) != 34:
        raise KeyNotFound(did, "did:key is not an Ed25519 key")
    return raw[2:]


def did_key_from_public_key(public_key: KeyInput) -> str:
    raw = load_public_key(public_key)
    return "did:key:z" + b58encode(ED25519_MULTICODEC + raw)


def did_web_url(did: str) -> str:
    """did:web:example.com:users:alice -> https://example.com/users/alice/did.json"""
    segments = did[len("did:web:"):].split(":")
    host = unquote(segments[0])
    if not host or not DOMAIN_PATTERN.match(host):
        raise KeyNotFound(did, "invalid did:web host")
    path = [unquote(s) for s in segments[1:] if s]
    if not path:
        return f"https://{host}/.well-known/did.json"
    return f"https://{host}/{'/'.join(path)}/did.json"


def select_did_verification_method(document: Any, did: str, fragment: str, vm: str) -> bytes:
    methods = document.get("verificationMethod") if isinstance(document, dict) else None
    if not isinstance(methods, list):
        raise KeyNotFound(vm, "DID document has no verificationMethod")

    wanted = {vm, f"#{fragment}"} if fragment else {did}
    method = next((m for m in methods if isinstance(m, dict) and m.get("id") in wanted), None)
    if method is None:
        raise KeyNotFound(vm, "verification method not in DID document")

    jwk = method.get("publicKeyJwk")
    if isinstance(jwk, dict):
        return select_key({"keys": [dict(jwk, kid=vm)]}, vm)[0]

    multibase = method.get("publicKeyMultibase")
    if isinstance(multibase, str):
        return did_key_public_key("did:key:" + multibase)

    raise KeyNotFound(vm, "verification method has no Ed25519 key material")


def build_key_set(keys: Iterable[RegistryKey], exp: Optional[int] = None) -> Dict[str, Any]:
    """Render the /.well-known/oap/keys.json document for a registry."""
    return {"keys": [key.public_jwk(exp) for key in keys]}
