import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Union

from codec import MessageCodec
from config import Settings, settings
from exceptions import DecodeError, InvalidValue, TransportUnavailable
from managers import DeviceStateStore, LivenessRegistry
from models import (
    CommandResponse, DeviceValue, HealthResponse, HeartbeatMessage, ManualCommandResponse,
    MessageKind, MQTTHealth, StateReportMessage, StateResponse, StatisticsResponse,
    ensure_aware, utcnow,
)
from mqtt_client import MQTTClient
from logger import get_logger

logger = get_logger('coordinator')

MENSAJES = {
    DeviceValue.on  : "Foco encendido",
    DeviceValue.off : "Foco apagado",
}

class SyncCoordinator:
    """
    Owns the state store and the liveness registry. Commands come from the
    HTTP layer, device messages from the transport's network thread; every
    read and write of either component happens under one lock.

    Wiring is two-phase: build the transport, build the coordinator around
    it, then call attach() before starting the transport.
    """

    def __init__(
        self
        , transport     : MQTTClient
        , config        : Settings = settings
        , clock         : Callable[[], datetime] = utcnow
        , codec         : Optional[MessageCodec] = None
        , state_store   : Optional[DeviceStateStore] = None
        , liveness      : Optional[LivenessRegistry] = None
    ):
        self.transport      = transport
        self.clock          = clock
        self.codec          = codec or MessageCodec(clock=clock)
        self.state_store    = state_store or DeviceStateStore(clock=clock)
        self.liveness       = liveness or LivenessRegistry(
            window_seconds  = config.DEVICE_HEARTBEAT_WINDOW_SECONDS
            , clock         = clock
        )
        self.topics         = config.get_topics()
        self.command_qos    = config.MQTT_COMMAND_QOS
        self.ack_qos        = config.MQTT_ACK_QOS
        self.server_name    = config.SERVER_NAME

        self._kind_by_topic = {
            self.topics["state_report"] : MessageKind.state_report,
            self.topics["heartbeat"]    : MessageKind.heartbeat,
        }
        self._lock          = threading.Lock()
        self.counters       : Dict[str, int] = {
            "decode_errors"             : 0,
            "acks_sent"                 : 0,
            "ack_failures"              : 0,
            "command_publish_failures"  : 0,
            "ignored_topics"            : 0,
        }

    def attach(self):
        """Register as the transport's message handler"""
        self.transport.set_message_handler(self.handle_message)

    # Command path

    def handle_command(
        self
        , device    : str
        , value     : Union[str, DeviceValue]
        , timestamp : Optional[datetime] = None
    ) -> CommandResponse:
        logger.info(f"Command received for {device}: {value}")

        device_value = self._validate_value(value)
        if not self.transport.is_connected:
            logger.warning(f"Command {device_value.value} rejected: MQTT transport unavailable")
            raise TransportUnavailable()

        at = ensure_aware(timestamp) or self.clock()
        with self._lock:
            state       = self.state_store.apply_command(device_value, at)
            live_count  = self.liveness.count()

        # A failed publish keeps the applied state: it is still the desired one
        payload = self.codec.encode(MessageKind.command, {"estado": device_value, "timestamp": at})
        if not self.transport.publish(self.topics["command"], payload, qos=self.command_qos):
            with self._lock:
                self.counters["command_publish_failures"] += 1
            logger.warning(f"Command {device_value.value} applied locally but not delivered to the broker")

        return CommandResponse(
            success             = True
            , mensaje           = MENSAJES[device_value]
            , estado            = state.value
            , timestamp         = state.updated_at
            , esp32sConectados  = live_count
            , mqttConnected     = self.transport.is_connected
        )

    def send_test_command(self, value: Union[str, DeviceValue]) -> ManualCommandResponse:
        """Publish a command straight to the devices without touching the stored state"""
        device_value = self._validate_value(value)
        if not self.transport.is_connected:
            raise TransportUnavailable()

        now     = self.clock()
        payload = self.codec.encode(MessageKind.command, {"estado": device_value, "timestamp": now})
        self.transport.publish(self.topics["command"], payload, qos=self.command_qos)
        return ManualCommandResponse(
            success     = True
            , mensaje   = f"Comando de test enviado: {device_value.value}"
            , timestamp = now
        )

    @staticmethod
    def _validate_value(value: Union[str, DeviceValue]) -> DeviceValue:
        try:
            return DeviceValue(value)
        except ValueError:
            logger.warning(f"Command rejected: invalid value {value!r}")
            raise InvalidValue(value) from None

    # Device path

    def handle_message(self, topic: str, payload: bytes):
        """Single dispatch point for everything the transport receives"""
        kind = self._kind_by_topic.get(topic)
        if kind is None:
            with self._lock:
                self.counters["ignored_topics"] += 1
            logger.debug(f"Ignoring message on unhandled topic {topic}")
            return

        try:
            kind, message = self.codec.decode(payload, kind)
        except DecodeError as e:
            with self._lock:
                self.counters["decode_errors"] += 1
            logger.error(f"Dropping malformed {kind.value} message on {topic}: {e}")
            return

        if kind == MessageKind.state_report:
            self._handle_state_report(message)
        else:
            self._handle_heartbeat(message)

    def _handle_state_report(self, message: StateReportMessage) -> bool:
        at = message.timestamp or self.clock()
        logger.info(f"State {message.estado.value} reported by {message.esp32_id}")
        with self._lock:
            accepted = self.state_store.apply_device_report(message.estado, at)

        # Acknowledged whether or not the report changed the state
        ack = self.codec.encode(MessageKind.status_ack, {
            "mensaje"   : f"Estado {message.estado.value} confirmado desde {message.esp32_id}",
            "servidor"  : self.server_name,
        })
        sent = self.transport.publish(self.topics["status_ack"], ack, qos=self.ack_qos)
        with self._lock:
            self.counters["acks_sent" if sent else "ack_failures"] += 1
        return accepted

    def _handle_heartbeat(self, message: HeartbeatMessage):
        logger.info(f"Heartbeat from {message.esp32_id}")
        with self._lock:
            self.liveness.record_heartbeat(message.esp32_id, self.clock())

    # Queries

    def sweep_liveness(self) -> List[str]:
        with self._lock:
            return self.liveness.sweep_stale()

    def live_device_count(self) -> int:
        with self._lock:
            return self.liveness.count()

    def current_state(self) -> StateResponse:
        with self._lock:
            state       = self.state_store.current()
            live_count  = self.liveness.count()
        return StateResponse(
            estado              = state.value
            , timestamp         = state.updated_at
            , esp32sConectados  = live_count
        )

    def statistics(self) -> StatisticsResponse:
        with self._lock:
            state       = self.state_store.current()
            devices     = sorted(self.liveness.active_devices())
            counters    = {
                **self.state_store.counters,
                **self.liveness.counters,
                **self.counters,
            }
        return StatisticsResponse(
            estadoFoco              = state.value
            , fuente                = state.source
            , ultimaActualizacion   = state.updated_at
            , esp32sConectados      = devices
            , totalESP32s           = len(devices)
            , contadores            = counters
            , mqtt                  = self.transport.get_connection_status()
        )

    def health(self) -> HealthResponse:
        with self._lock:
            state       = self.state_store.current()
            live_count  = self.liveness.count()
        return HealthResponse(
            status      = "ok"
            , timestamp = self.clock()
            , service   = "Light Bridge MQTT"
            , mqtt      = MQTTHealth(
                connected   = self.transport.is_connected
                , broker    = self.transport.broker_address
            )
            , esp32s        = live_count
            , estadoFoco    = state.value
        )
