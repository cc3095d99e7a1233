"""
Install lock rows - one live row per (company_id, location_id) key.
The key column is derived so that (company, NULL) and (company, location) never collide.
"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from ghl_ingest.database import Base


class InstallLock(Base):
    __tablename__ = "install_locks"

    lock_key: Mapped[str] = mapped_column(String(140), primary_key=True)
    company_id: Mapped[Optional[str]] = mapped_column(String(64))
    location_id: Mapped[Optional[str]] = mapped_column(String(64))
    holder: Mapped[str] = mapped_column(String(100), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<InstallLock {self.lock_key} holder={self.holder}>"
