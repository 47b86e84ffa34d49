import asyncio
import threading
from typing import Any, Callable, Dict, Optional, Union

import paho.mqtt.client as mqtt

from config import Settings, settings
from exceptions import ConnectTimeout, PublishFailure
from models import ConnectionState
from logger import get_logger

logger = get_logger('mqtt')

MessageHandler = Callable[[str, bytes], None]

class MQTTClient:
    """
    Owns the broker connection. Reconnects forever with a fixed backoff and
    resubscribes after every successful connect. Inbound messages go to a
    single handler regardless of topic.
    """

    def __init__(
        self
        , config            : Settings = settings
        , client_factory    : Callable[..., Any] = mqtt.Client
    ):
        self.client             = None
        self.client_factory     = client_factory
        self.broker_host        = config.MQTT_HOST
        self.broker_port        = config.MQTT_PORT
        self.username           = config.MQTT_USERNAME
        self.password           = config.MQTT_PASSWORD
        self.use_tls            = config.use_tls()
        self.client_id          = config.MQTT_CLIENT_ID
        self.keepalive          = config.MQTT_KEEPALIVE
        self.connect_timeout    = config.MQTT_CONNECT_TIMEOUT
        self.reconnect_period   = config.MQTT_RECONNECT_PERIOD
        self.topics             = config.get_topics()
        self.subscribe_topics   = [self.topics["state_report"], self.topics["heartbeat"]]

        self.state              = ConnectionState.disconnected
        self._handler           : Optional[MessageHandler] = None
        self._connected_event   = threading.Event()
        self._stopping          = False
        self._has_connected     = False
        self.counters           : Dict[str, int] = {
            "messages_received" : 0,
            "publish_failures"  : 0,
            "reconnects"        : 0,
            "subscribe_failures": 0,
        }

    @property
    def broker_address(self) -> str:
        return f"{self.broker_host}:{self.broker_port}"

    @property
    def is_connected(self) -> bool:
        """True only while the broker session is actually established"""
        return self.state == ConnectionState.connected

    def set_message_handler(self, handler: MessageHandler):
        """Register the single dispatch point for inbound messages"""
        if self._handler is not None and self._handler is not handler:
            logger.warning("MQTT: Replacing existing message handler")
        self._handler = handler

    def _create_client(self):
        client = self.client_factory(
            callback_api_version    = mqtt.CallbackAPIVersion.VERSION2
            , client_id             = self.client_id
            , protocol              = mqtt.MQTTv311
            , clean_session         = True
        )

        # Anonymous connect when no username is configured
        if self.username:
            client.username_pw_set(self.username, self.password)

        if self.use_tls:
            client.tls_set()

        client.reconnect_delay_set(min_delay=self.reconnect_period, max_delay=self.reconnect_period)
        client.connect_timeout = self.connect_timeout

        client.on_connect       = self._on_connect
        client.on_connect_fail  = self._on_connect_fail
        client.on_message       = self._on_message
        client.on_disconnect    = self._on_disconnect
        client.on_subscribe     = self._on_subscribe
        client.on_publish       = self._on_publish
        return client

    async def connect(self):
        """
        Start the network loop and wait up to connect_timeout for the broker.
        Raises ConnectTimeout when the wait expires; the loop keeps retrying
        in the background either way.
        """
        if self.client is not None:
            await self.disconnect()

        self._stopping      = False
        self._has_connected = False
        self._connected_event.clear()

        try:
            self.client = self._create_client()
            self.state  = ConnectionState.connecting
            logger.info(
                f"MQTT: Connecting to {self.broker_address} as {self.client_id} "
                f"(tls={self.use_tls}, user={self.username or 'anonymous'})"
            )
            self.client.connect_async(self.broker_host, self.broker_port, self.keepalive)
            self.client.loop_start()

        except Exception as e:
            logger.error(f"MQTT: Failed to start connection - {e}")
            raise

        connected = await asyncio.to_thread(self._connected_event.wait, self.connect_timeout)
        if self._stopping:
            logger.info("MQTT: Connect wait abandoned, client is shutting down")
            return
        if not connected:
            error = ConnectTimeout(self.broker_address, self.connect_timeout)
            logger.error(f"MQTT: {error}; retrying every {self.reconnect_period}s in background")
            raise error

    async def disconnect(self):
        """Disconnect from MQTT broker"""
        self._stopping = True
        if self.client:
            self.client.disconnect()
            self.client.loop_stop()
            logger.info("MQTT: Disconnected")
        self.client = None
        self.state  = ConnectionState.disconnected
        # Releases a connect() still waiting for the broker
        self._connected_event.set()

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        """Callback for when the broker answers a connection attempt"""
        if reason_code.is_failure:
            self.state = ConnectionState.reconnecting
            logger.error(f"MQTT: Connection refused - {reason_code}")
            return

        if self._has_connected:
            self.counters["reconnects"] += 1
        self._has_connected = True
        self.state          = ConnectionState.connected
        self._connected_event.set()
        logger.info(f"MQTT: Connected successfully to {self.broker_address}")

        self._subscribe_to_topics()

    def _on_connect_fail(self, client, userdata):
        if not self._stopping:
            self.state = ConnectionState.reconnecting
            logger.warning(f"MQTT: Connection attempt failed, retrying in {self.reconnect_period}s")

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        """Callback for when client disconnects from broker"""
        self._connected_event.clear()
        if self._stopping:
            self.state = ConnectionState.disconnected
            logger.info("MQTT: Disconnected cleanly")
        else:
            self.state = ConnectionState.reconnecting
            logger.warning(
                f"MQTT: Unexpected disconnection ({reason_code}), reconnecting in {self.reconnect_period}s"
            )

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties):
        """Callback for when subscription is confirmed"""
        for reason_code in reason_code_list:
            if reason_code.is_failure:
                self.counters["subscribe_failures"] += 1
                logger.error(f"MQTT: Subscription rejected (mid: {mid}) - {reason_code}; will retry on reconnect")
            else:
                logger.debug(f"MQTT: Subscription confirmed (mid: {mid}, qos: {reason_code.value})")

    def _on_publish(self, client, userdata, mid, reason_code, properties):
        """Completion callback for every publish"""
        if reason_code.is_failure:
            self.counters["publish_failures"] += 1
            logger.error(f"MQTT: {PublishFailure(f'mid {mid}', reason_code)}")
        else:
            logger.debug(f"MQTT: Message published (mid: {mid})")

    def _on_message(self, client, userdata, msg):
        """Callback for when message is received"""
        self.counters["messages_received"] += 1
        logger.info(f"MQTT: Received - Topic: {msg.topic}, Payload: {msg.payload.decode('utf-8', 'replace')}")

        handler = self._handler
        if handler is None:
            logger.warning(f"MQTT: No message handler registered, dropping message on {msg.topic}")
            return

        try:
            handler(msg.topic, msg.payload)
        except Exception:
            logger.exception(f"MQTT: Error processing message on {msg.topic}")

    def _subscribe_to_topics(self):
        """Subscribe to the device to backend topics"""
        for topic in self.subscribe_topics:
            result, mid = self.client.subscribe(topic, qos=0)
            if result == mqtt.MQTT_ERR_SUCCESS:
                logger.info(f"MQTT: Subscribed to {topic}")
            else:
                self.counters["subscribe_failures"] += 1
                logger.error(f"MQTT: Failed to subscribe to {topic} ({mqtt.error_string(result)}); will retry on reconnect")

    def publish(self, topic: str, payload: Union[bytes, str], qos: int = 0) -> bool:
        """
        Fire and forget. Returns whether the message was queued; failures are
        logged and counted, never raised.
        """
        if self.client is None:
            self.counters["publish_failures"] += 1
            logger.error(f"MQTT: {PublishFailure(topic, 'client not started')}")
            return False

        result = self.client.publish(topic, payload, qos=qos)

        if result.rc == mqtt.MQTT_ERR_SUCCESS:
            logger.info(f"MQTT: Published - Topic: {topic}, mid: {result.mid}, qos: {qos}")
            return True

        self.counters["publish_failures"] += 1
        logger.error(f"MQTT: {PublishFailure(topic, mqtt.error_string(result.rc))}")
        return False

    def get_connection_status(self) -> Dict[str, Any]:
        """Get current MQTT connection status"""
        return {
            "connected"         : self.is_connected,
            "state"             : self.state.value,
            "broker"            : self.broker_address,
            "clientId"          : self.client_id,
            "topics"            : dict(self.topics),
            "subscribedTopics"  : list(self.subscribe_topics) if self.is_connected else [],
            "counters"          : dict(self.counters),
        }
