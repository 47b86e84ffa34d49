from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field, field_validator

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Naive timestamps from devices are read as UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

class DeviceValue(str, Enum):
    on              = "on"
    off             = "off"

class UpdateSource(str, Enum):
    command         = "command"
    device_report   = "device-report"

class ConnectionState(str, Enum):
    disconnected    = "disconnected"
    connecting      = "connecting"
    connected       = "connected"
    reconnecting    = "reconnecting"

class MessageKind(str, Enum):
    command         = "command"
    state_report    = "stateReport"
    heartbeat       = "heartbeat"
    status_ack      = "statusAck"

class DeviceState(BaseModel):
    model_config    = ConfigDict(frozen=True)

    value           : DeviceValue = Field(..., description="Current logical value")
    updated_at      : datetime = Field(..., description="Timestamp of last accepted write")
    source          : UpdateSource = Field(..., description="Write path that set the value")

class LivenessEntry(BaseModel):
    model_config        = ConfigDict(frozen=True)

    device_id           : str = Field(..., description="Device supplied identifier")
    last_heartbeat_at   : datetime = Field(..., description="Most recent heartbeat")

# Wire messages. Field names follow the JSON contract the devices speak.

class WireMessage(BaseModel):
    model_config    = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("timestamp", mode="after", check_fields=False)
    @classmethod
    def _aware_timestamp(cls, value):
        return ensure_aware(value)

class CommandMessage(WireMessage):
    estado          : DeviceValue
    timestamp       : Optional[datetime] = None
    origen          : str = "backend"

class StateReportMessage(WireMessage):
    estado          : DeviceValue
    timestamp       : Optional[datetime] = None
    esp32_id        : str = Field(default="unknown", alias="esp32Id")
    origen          : str = "device"

    @field_validator("esp32_id", mode="before")
    @classmethod
    def _default_device_id(cls, value):
        # Reports with a null or empty id are still attributed and acked
        return value or "unknown"

class HeartbeatMessage(WireMessage):
    esp32_id        : str = Field(..., alias="esp32Id", min_length=1)
    timestamp       : Optional[datetime] = None
    origen          : str = "device"

class StatusAckMessage(WireMessage):
    mensaje         : str
    timestamp       : Optional[datetime] = None
    servidor        : str = "backend"
    origen          : str = "backend"

MESSAGE_MODELS = {
    MessageKind.command         : CommandMessage,
    MessageKind.state_report    : StateReportMessage,
    MessageKind.heartbeat       : HeartbeatMessage,
    MessageKind.status_ack      : StatusAckMessage,
}

# HTTP DTOs. The caller facing names are kept in Spanish.

class DeviceCommand(BaseModel):
    model_config    = ConfigDict(populate_by_name=True)

    dispositivo     : str = Field(..., description="Device identifier", alias="device")
    estado          : str = Field(..., description="Desired state, on or off")
    timestamp       : Optional[datetime] = Field(default=None, description="Caller timestamp")

    @field_validator("timestamp", mode="after")
    @classmethod
    def _aware_timestamp(cls, value):
        return ensure_aware(value)

class CommandResponse(BaseModel):
    success             : bool
    mensaje             : str
    estado              : DeviceValue
    timestamp           : datetime
    esp32sConectados    : int
    mqttConnected       : bool

class StateResponse(BaseModel):
    estado              : DeviceValue
    timestamp           : datetime
    esp32sConectados    : int

class ManualCommandResponse(BaseModel):
    success             : bool
    mensaje             : str
    timestamp           : datetime

class MQTTHealth(BaseModel):
    connected           : bool
    broker              : str

class HealthResponse(BaseModel):
    status              : str
    timestamp           : datetime
    service             : str
    mqtt                : MQTTHealth
    esp32s              : int
    estadoFoco          : DeviceValue

class StatisticsResponse(BaseModel):
    estadoFoco          : DeviceValue
    fuente              : UpdateSource
    ultimaActualizacion : datetime
    esp32sConectados    : List[str]
    totalESP32s         : int
    contadores          : Dict[str, int]
    mqtt                : Dict[str, Any]
