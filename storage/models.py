"""SQLAlchemy tables for the local sample buffer."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()

STATUS_RECORDING = 'recording'
STATUS_SEALED = 'sealed'


class BufferedSession(Base):
    __tablename__ = 'buffered_sessions'

    id = Column(String, primary_key=True)
    status = Column(String, nullable=False, default=STATUS_RECORDING)
    opened_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    sealed_at = Column(DateTime, nullable=True)
    sample_count = Column(Integer, nullable=False, default=0)
    degraded = Column(Boolean, nullable=False, default=False)


class BufferedSample(Base):
    __tablename__ = 'buffered_samples'
    __table_args__ = (UniqueConstraint('session_id', 'seq', name='uq_session_seq'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, ForeignKey('buffered_sessions.id'), nullable=False, index=True)
    seq = Column(Integer, nullable=False)
    payload = Column(Text, nullable=False)
    written_at = Column(DateTime, nullable=False, default=datetime.utcnow)
