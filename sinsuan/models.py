from dataclasses import dataclass
from typing import Optional

import sqlalchemy as sa

from sinsuan import db
from sinsuan.naming import RECORD_TABLE, resolve_name


class IpLocation(db.Model):
    __tablename__ = "ip_location"

    ip = db.Column(db.String(64), primary_key=True)
    nation = db.Column(db.String(64), nullable=True, index=True)
    province = db.Column(db.String(64), nullable=True)
    city = db.Column(db.String(64), nullable=True)
    district = db.Column(db.String(64), nullable=True)
    lat = db.Column(db.Float, nullable=True)
    lon = db.Column(db.Float, nullable=True)

    __table_args__ = (
        db.Index("ix_ip_location_ip", "ip", unique=True),
    )


def visit_record_table(table_name: str) -> sa.Table:
    # Tenant tables stay off db.metadata.
    return sa.Table(
        table_name,
        sa.MetaData(),
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("path", sa.Text(), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("ip", sa.Text(), nullable=False, server_default=""),
        sa.Column("timestamp", sa.DateTime(), nullable=False, server_default=sa.func.current_timestamp()),
        sqlite_autoincrement=True,
    )


def tenant_record_table(domain: str) -> sa.Table:
    return visit_record_table(resolve_name(RECORD_TABLE, domain))


@dataclass
class VisitRecord:
    path: str
    user_id: str
    ip: str = ""


@dataclass
class CombinedVisitCount:
    pv: int = 0
    uv: int = 0
    site_pv: int = 0
    site_uv: int = 0
    visitor_id: Optional[str] = None

    def to_dict(self) -> dict:
        # The browser client stores the id it gets back under this key.
        return {
            "sin_suan_id": self.visitor_id,
            "pv": self.pv,
            "uv": self.uv,
            "site_pv": self.site_pv,
            "site_uv": self.site_uv,
        }
