"""SQLite storage for finished measurement runs."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Float, Integer, String, Text, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

DB_FILENAME = "metrics.db"


class Base(DeclarativeBase):
    pass


class Measurement(Base):
    """One successful latency or throughput run.

    Latency rows fill the packet and RTT columns, throughput rows the Mbps,
    byte and update columns; the other group stays NULL.
    """

    __tablename__ = "measurements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    measurement_type: Mapped[str] = mapped_column(String(32), index=True)
    server: Mapped[Optional[str]] = mapped_column(String(128))
    measurement_id: Mapped[Optional[str]] = mapped_column(String(128))
    # latency
    packets_sent: Mapped[Optional[int]] = mapped_column(Integer)
    packets_received: Mapped[Optional[int]] = mapped_column(Integer)
    rtt_mean_ms: Mapped[Optional[float]] = mapped_column(Float)
    rtt_stdev_ms: Mapped[Optional[float]] = mapped_column(Float)
    # throughput
    mbps: Mapped[Optional[float]] = mapped_column(Float)
    app_bytes: Mapped[Optional[int]] = mapped_column(BigInteger)
    client_updates: Mapped[Optional[int]] = mapped_column(Integer)
    server_updates: Mapped[Optional[int]] = mapped_column(Integer)
    soft_end: Mapped[Optional[bool]] = mapped_column(Boolean)
    raw_json: Mapped[str] = mapped_column(Text)

    @property
    def loss_percent(self) -> Optional[float]:
        if not self.packets_sent or self.packets_received is None:
            return None
        return 100.0 * (self.packets_sent - self.packets_received) / self.packets_sent

    def __repr__(self) -> str:
        return f"<Measurement {self.id} {self.measurement_type} at {self.timestamp}>"


def init_db(data_dir: Path) -> sessionmaker:
    engine = create_engine(f"sqlite:///{data_dir / DB_FILENAME}", future=True)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, future=True, expire_on_commit=False)


@contextmanager
def get_session(Session: sessionmaker) -> Iterator:
    session = Session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
