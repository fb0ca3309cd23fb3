from sqlalchemy import (
    create_engine, Column, String, Integer, BigInteger, DateTime, Index, UniqueConstraint,
)
from sqlalchemy.orm import sessionmaker, declarative_base

Base = declarative_base()


class Checkpoint(Base):
    __tablename__ = 'checkpoints'
    __table_args__ = (
        UniqueConstraint('network', 'l2_block_number', name='uq_checkpoints_network_l2_block'),
        Index('ix_checkpoints_network_l1_block', 'network', 'l1_block_number'),
    )

    id = Column(Integer, primary_key=True)
    family = Column(String, nullable=False)
    network = Column(String, nullable=False)
    l2_block_number = Column(BigInteger, nullable=False)
    l2_output_index = Column(BigInteger)
    l2_block_hash = Column(String)
    output_root = Column(String, nullable=False)
    l1_block_number = Column(BigInteger, nullable=False)
    l1_block_hash = Column(String, nullable=False)
    l1_transaction_hash = Column(String, nullable=False)
    l1_transaction_index = Column(Integer)
    log_index = Column(Integer, nullable=False)
    l1_timestamp = Column(BigInteger)
    observed_at = Column(DateTime(timezone=True), nullable=False)


class Cursor(Base):
    __tablename__ = 'cursors'

    family = Column(String, primary_key=True)
    network = Column(String, primary_key=True)
    last_scanned_block = Column(BigInteger, nullable=False)
    # hash of last_scanned_block as seen when it was scanned, for reorg checks
    last_scanned_hash = Column(String)
    updated_at = Column(DateTime(timezone=True))


def init_db(url='sqlite:///checkpoints.db'):
    engine = create_engine(url, pool_pre_ping=True)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)
