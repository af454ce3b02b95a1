"""Models for receiver discovery."""

import time

from pydantic import BaseModel, ConfigDict, Field


class DeviceRecord(BaseModel):
    """A screen receiver found on the LAN during one discovery pass."""
    model_config = ConfigDict(frozen=True)

    address: str
    port: int = Field(gt=0, le=65535)
    first_seen: float  # Unix timestamp
    usn: str = ""
    server: str = ""

    @property
    def key(self) -> tuple[str, int]:
        return (self.address, self.port)

    def __str__(self) -> str:
        return f"{self.address}:{self.port}"


class Registry:
    """
    Insertion-ordered set of DeviceRecords keyed by (address, port).

    Built fresh for every discovery pass; there is no removal.
    """

    def __init__(self) -> None:
        self._records: dict[tuple[str, int], DeviceRecord] = {}

    def add(self, address: str, port: int, *, usn: str = "", server: str = "") -> bool:
        """Insert a record. Returns False if (address, port) is already known."""
        key = (address, port)
        if key in self._records:
            return False
        self._records[key] = DeviceRecord(
            address=address,
            port=port,
            first_seen=time.time(),
            usn=usn,
            server=server,
        )
        return True

    def snapshot(self) -> list[DeviceRecord]:
        """Records in first-discovered-first order."""
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: object) -> bool:
        return key in self._records
