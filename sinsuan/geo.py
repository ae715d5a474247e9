import hashlib
from concurrent.futures import Future, ThreadPoolExecutor
from ipaddress import ip_address

import httpx
from sqlalchemy.exc import SQLAlchemyError

from sinsuan.storage import StorageError, find_location, save_location

IP_LOCATION_PATH = "/ws/location/v1/ip"


class GeoResolutionError(RuntimeError):
    pass


class GeoConfigError(RuntimeError):
    pass


def validate_geo_configuration(key: str | None, secret: str | None) -> None:
    if bool((key or "").strip()) != bool((secret or "").strip()):
        raise GeoConfigError("QQ_MAP_KEY and QQ_MAP_SK must be set together (or both left empty).")


def sign_request(path: str, params: dict, secret: str) -> str:
    """Request signature for the QQ Map web service.

    Parameters are sorted by name and joined unencoded, appended to the
    request path and the secret key, then MD5-hashed.
    """
    query = "&".join(f"{name}={params[name]}" for name in sorted(params))
    return hashlib.md5(f"{path}?{query}{secret}".encode("utf-8")).hexdigest()


def is_resolvable_ip(ip: str | None) -> bool:
    if not ip:
        return False
    try:
        return not ip_address(ip.strip()).is_loopback
    except ValueError:
        return False


def _as_float(value):
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _as_text(value, max_len: int = 64):
    if value is None:
        return None
    text = str(value).strip()
    return text[:max_len] or None


def parse_location(payload) -> dict | None:
    result = payload.get("result") if isinstance(payload, dict) else None
    if not isinstance(result, dict):
        return None

    ad_info = result.get("ad_info") if isinstance(result.get("ad_info"), dict) else {}
    location = result.get("location") if isinstance(result.get("location"), dict) else {}
    return {
        "nation": _as_text(ad_info.get("nation")),
        "province": _as_text(ad_info.get("province")),
        "city": _as_text(ad_info.get("city")),
        "district": _as_text(ad_info.get("district")),
        "lat": _as_float(location.get("lat")),
        "lon": _as_float(location.get("lng")),
    }


class GeoResolver:
    def __init__(
        self,
        store,
        logger,
        *,
        base_url: str,
        key: str,
        secret: str,
        timeout: float = 3.0,
        workers: int = 0,
    ):
        self.store = store
        self.logger = logger
        self.base_url = base_url.rstrip("/")
        self.key = (key or "").strip()
        self.secret = (secret or "").strip()
        self.timeout = timeout
        self._executor = (
            ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sinsuan-geo") if workers > 0 else None
        )

    @classmethod
    def from_config(cls, config, store, logger) -> "GeoResolver":
        validate_geo_configuration(config.get("QQ_MAP_KEY"), config.get("QQ_MAP_SK"))
        return cls(
            store,
            logger,
            base_url=config.get("QQ_MAP_BASE_URL") or "https://apis.map.qq.com",
            key=config.get("QQ_MAP_KEY") or "",
            secret=config.get("QQ_MAP_SK") or "",
            timeout=float(config.get("QQ_MAP_TIMEOUT") or 3.0),
            workers=int(config.get("GEO_RESOLVE_WORKERS") or 0),
        )

    @property
    def configured(self) -> bool:
        return bool(self.key and self.secret)

    def fetch_location(self, ip: str) -> dict | None:
        params = {"ip": ip, "key": self.key}
        params["sig"] = sign_request(IP_LOCATION_PATH, params, self.secret)

        try:
            response = httpx.get(f"{self.base_url}{IP_LOCATION_PATH}", params=params, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise GeoResolutionError(f"Location lookup failed: {exc}") from exc
        except ValueError as exc:
            raise GeoResolutionError("Location service returned malformed JSON.") from exc

        location = parse_location(payload)
        if location is None and isinstance(payload, dict) and payload.get("status") not in (None, 0):
            self.logger.info(
                "Location service declined ip=%s status=%s message=%s",
                ip,
                payload.get("status"),
                payload.get("message"),
            )
        return location

    def resolve_and_cache(self, ip: str | None) -> bool:
        """Make sure ``ip`` has a cached location. Returns True when a row was written.

        Never raises: provider and storage failures are logged and the ip stays
        unresolved until a later request retries it.
        """
        if not self.configured or not is_resolvable_ip(ip):
            return False
        ip = ip.strip()

        try:
            with self.store.lend() as conn:
                if find_location(conn, ip) is not None:
                    return False

            location = self.fetch_location(ip)
            if location is None:
                return False

            with self.store.lend() as conn:
                return save_location(conn, ip, location)
        except GeoResolutionError as exc:
            self.logger.warning("Could not resolve location for ip=%s: %s", ip, exc)
        except (StorageError, SQLAlchemyError):
            self.logger.warning("Could not cache location for ip=%s", ip, exc_info=True)
        return False

    def submit(self, ip: str | None) -> Future | None:
        if not self.configured or not is_resolvable_ip(ip):
            return None
        if self._executor is None:
            self.resolve_and_cache(ip)
            return None

        future = self._executor.submit(self.resolve_and_cache, ip)
        future.add_done_callback(self._log_failure)
        return future

    def _log_failure(self, future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self.logger.error("Background location lookup crashed", exc_info=exc)

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
