"""
Instance Models
===============
Durable records for configured Pi-hole servers.
"""

import time
import uuid
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field

from ..crypto import EncryptedBlob


class Instance(BaseModel):
    """A configured Pi-hole server and its encrypted credentials."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: Optional[str] = None
    url: str
    passwordless: bool = False
    remember_password: bool = False
    encrypted_password: Optional[EncryptedBlob] = None
    encrypted_master_key: Optional[EncryptedBlob] = None
    created_at: float = Field(default_factory=time.time)


class GlobalSettings(BaseModel):
    notifications_enabled: bool = True
    refresh_interval: int = 30


class InstanceCollection(BaseModel):
    """Everything persisted under the ``pisentinel_instances`` key."""

    instances: List[Instance] = Field(default_factory=list)
    active_instance_id: Optional[str] = None  # None = "All" mode
    global_settings: GlobalSettings = Field(default_factory=GlobalSettings)

    def find(self, instance_id: str) -> Optional[Instance]:
        for instance in self.instances:
            if instance.id == instance_id:
                return instance
        return None

    def index_of(self, instance_id: str) -> int:
        for index, instance in enumerate(self.instances):
            if instance.id == instance_id:
                return index
        return -1


class InstanceUpdate(BaseModel):
    """
    Partial update. Only fields explicitly set are applied, so
    ``InstanceUpdate(name=None)`` clears the name while ``InstanceUpdate()``
    leaves it alone.
    """

    name: Optional[str] = None
    url: Optional[str] = None
    password: Optional[str] = None
    remember_password: Optional[bool] = None

    def is_set(self, field_name: str) -> bool:
        return field_name in self.model_fields_set


class LegacyConfig(BaseModel):
    """Single-instance record stored under ``pisentinel_config`` by earlier releases."""

    model_config = ConfigDict(populate_by_name=True)

    pihole_url: str = Field(default="", alias="piholeUrl")
    encrypted_password: Optional[EncryptedBlob] = Field(default=None, alias="encryptedPassword")
    encrypted_master_key: Optional[EncryptedBlob] = Field(default=None, alias="encryptedMasterKey")
    remember_password: bool = Field(default=False, alias="rememberPassword")
    notifications_enabled: bool = Field(default=True, alias="notificationsEnabled")
    refresh_interval: int = Field(default=30, alias="refreshInterval")
