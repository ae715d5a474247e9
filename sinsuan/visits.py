from uuid import uuid4

from sinsuan.models import CombinedVisitCount, VisitRecord
from sinsuan.storage import (
    ProvisioningError,
    QueryError,
    RecordingError,
    VisitStore,
    ensure_ready,
    query_count,
    record_visit,
)

DEFAULT_CLIENT_IP = "127.0.0.1"


class VisitCounter:
    def __init__(self, store: VisitStore, geo, logger):
        self.store = store
        self.geo = geo
        self.logger = logger

    def handle_visit(
        self,
        domain: str,
        path: str,
        user_id: str | None = None,
        client_ip: str | None = None,
    ) -> CombinedVisitCount | None:
        """Record one visit and return the counts that include it.

        Returns None when the tenant storage cannot be provisioned or counted.
        A failed insert or location lookup is logged and the counts of what is
        already stored are still returned.
        """
        user_id = (user_id or "").strip() or str(uuid4())
        ip = str(client_ip) if client_ip else DEFAULT_CLIENT_IP

        with self.store.lend() as conn:
            try:
                ensure_ready(conn, domain)
            except ProvisioningError:
                self.logger.exception("Could not provision storage for domain=%s", domain)
                return None

        # Runs with no connection borrowed; inline lookups may wait on the provider.
        try:
            self.geo.submit(ip)
        except Exception:
            self.logger.exception("Location lookup failed for ip=%s", ip)

        with self.store.lend() as conn:
            try:
                record_visit(conn, domain, VisitRecord(path=path, user_id=user_id, ip=ip))
            except RecordingError:
                self.logger.exception("Could not record visit domain=%s path=%s", domain, path)

            try:
                counts = query_count(conn, domain, path)
            except QueryError:
                self.logger.exception("Could not count visits domain=%s path=%s", domain, path)
                return None

        counts.visitor_id = user_id
        return counts

    def shutdown(self) -> None:
        self.geo.shutdown()
        self.store.drain()
