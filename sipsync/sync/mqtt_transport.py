"""MQTT transport between the two devices.

Topic layout, per device:

    <prefix>/<device>/status            retained "online"/"offline" (last will)
    <prefix>/<device>/inbox/immediate   QoS 0, dropped if nobody listens
    <prefix>/<device>/inbox/reliable    QoS 1, held by the broker for the
                                        device's persistent session
    <prefix>/<device>/inbox/context     QoS 1 retained, latest value wins
    <prefix>/<device>/inbox/reply       answers to this device's requests

Request/reply uses the MQTT v5 ResponseTopic and CorrelationData
properties. Paho runs its callbacks on its own network thread; every
event is handed to the asyncio loop with call_soon_threadsafe.
"""

import asyncio
import logging
import uuid
from typing import Any

import paho.mqtt.client as mqtt
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

from ..config import MQTTConfig
from ..errors import TransportUnavailableError
from .transport import DeliveryChannel, ReplyHandler, TransportEvent, TransportEventType

logger = logging.getLogger(__name__)

ONLINE = b"online"
OFFLINE = b"offline"


class MQTTTransport:
    """Transport over an MQTT v5 broker."""

    def __init__(self, config: MQTTConfig, device_name: str, peer_name: str):
        self.config = config
        self.device_name = device_name
        self.peer_name = peer_name

        self.events: asyncio.Queue[TransportEvent] = asyncio.Queue()
        self._pending_replies: dict[bytes, asyncio.Future[bytes]] = {}

        self._client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"{config.topic_prefix}-{device_name}",
            protocol=mqtt.MQTTv5,
        )
        self._client.on_connect = self._handle_connect
        self._client.on_message = self._handle_message
        self._client.on_disconnect = self._handle_disconnect
        self._client.will_set(self.status_topic(device_name), OFFLINE, qos=1, retain=True)

        # Connection state
        self._connected = False
        self._peer_online = False
        self._loop: asyncio.AbstractEventLoop | None = None

    # ==================== Topics ====================

    def status_topic(self, device: str) -> str:
        return f"{self.config.topic_prefix}/{device}/status"

    def inbox_topic(self, device: str, box: str) -> str:
        return f"{self.config.topic_prefix}/{device}/inbox/{box}"

    @property
    def reply_topic(self) -> str:
        return self.inbox_topic(self.device_name, "reply")

    # ==================== Paho callbacks (network thread) ====================

    def _post(self, event: TransportEvent) -> None:
        if self._loop:
            self._loop.call_soon_threadsafe(self.events.put_nowait, event)

    def _handle_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Handle connection to broker."""
        if reason_code == 0:
            self._connected = True
            logger.info(f"Connected to MQTT broker at {self.config.broker}:{self.config.port}")

            client.subscribe(self.inbox_topic(self.device_name, "#"), qos=1)
            client.subscribe(self.status_topic(self.peer_name), qos=1)
            client.publish(self.status_topic(self.device_name), ONLINE, qos=1, retain=True)

            self._post(TransportEvent(type=TransportEventType.ACTIVATION_COMPLETE))
        else:
            logger.error(f"Failed to connect to MQTT broker: {reason_code}")
            self._post(
                TransportEvent(
                    type=TransportEventType.ACTIVATION_COMPLETE,
                    error=str(reason_code),
                )
            )

    def _handle_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        disconnect_flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Handle disconnection from broker."""
        self._connected = False
        logger.warning(f"Disconnected from MQTT broker: {reason_code}")
        self._set_peer_online(False)

    def _set_peer_online(self, online: bool) -> None:
        if online == self._peer_online:
            return
        self._peer_online = online
        self._post(
            TransportEvent(
                type=TransportEventType.REACHABILITY_CHANGED,
                reachable=online,
            )
        )

    def _handle_message(
        self,
        client: mqtt.Client,
        userdata: Any,
        msg: mqtt.MQTTMessage,
    ) -> None:
        """Handle incoming message."""
        if msg.topic == self.status_topic(self.peer_name):
            self._set_peer_online(msg.payload == ONLINE)
            return

        props = getattr(msg, "properties", None)
        correlation = getattr(props, "CorrelationData", None)

        if msg.topic == self.reply_topic:
            if correlation is None:
                logger.warning("Reply without correlation data, ignoring")
                return
            if self._loop:
                self._loop.call_soon_threadsafe(
                    self._resolve_reply, bytes(correlation), bytes(msg.payload)
                )
            return

        box = msg.topic.rsplit("/", 1)[-1]
        try:
            channel = DeliveryChannel(box)
        except ValueError:
            logger.warning(f"Message on unknown inbox topic {msg.topic}, ignoring")
            return

        response_topic = getattr(props, "ResponseTopic", None)
        reply = None
        if response_topic and correlation is not None:
            reply = self._make_reply(response_topic, bytes(correlation))

        logger.debug(f"Received {len(msg.payload)} bytes on {msg.topic}")
        self._post(
            TransportEvent(
                type=TransportEventType.RECEIVED,
                payload=bytes(msg.payload),
                channel=channel,
                reply=reply,
            )
        )

    # ==================== Replies ====================

    def _resolve_reply(self, correlation: bytes, payload: bytes) -> None:
        future = self._pending_replies.get(correlation)
        if future is None or future.done():
            logger.debug("Late or unknown reply, ignoring")
            return
        future.set_result(payload)

    def _make_reply(self, response_topic: str, correlation: bytes) -> ReplyHandler:
        async def reply(data: bytes) -> None:
            props = Properties(PacketTypes.PUBLISH)
            props.CorrelationData = correlation
            self._client.publish(response_topic, data, qos=1, properties=props)

        return reply

    # ==================== Transport interface ====================

    def is_reachable(self) -> bool:
        return self._connected and self._peer_online

    async def activate(self) -> None:
        """Connect to the broker; completion arrives as an event."""
        self._loop = asyncio.get_running_loop()

        if self.config.username and self.config.password:
            self._client.username_pw_set(self.config.username, self.config.password)

        connect_props = Properties(PacketTypes.CONNECT)
        connect_props.SessionExpiryInterval = self.config.session_expiry_seconds

        try:
            self._client.connect(
                self.config.broker,
                self.config.port,
                keepalive=self.config.keepalive,
                clean_start=False,
                properties=connect_props,
            )
            self._client.loop_start()
        except Exception as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            self.events.put_nowait(
                TransportEvent(type=TransportEventType.ACTIVATION_COMPLETE, error=str(e))
            )

    async def close(self) -> None:
        """Announce offline and disconnect from the broker."""
        if self._connected:
            info = self._client.publish(
                self.status_topic(self.device_name), OFFLINE, qos=1, retain=True
            )
            info.wait_for_publish(timeout=2.0)
        self._client.loop_stop()
        self._client.disconnect()
        self._connected = False
        self._peer_online = False

        for future in self._pending_replies.values():
            future.cancel()
        self._pending_replies.clear()

    async def send_immediate(
        self,
        payload: bytes,
        expect_reply: bool = False,
        timeout: float | None = None,
    ) -> bytes | None:
        if not self.is_reachable():
            raise TransportUnavailableError(f"{self.peer_name} is not reachable")

        topic = self.inbox_topic(self.peer_name, DeliveryChannel.IMMEDIATE.value)
        if not expect_reply:
            self._client.publish(topic, payload, qos=0)
            return None

        correlation = uuid.uuid4().bytes
        future: asyncio.Future[bytes] = asyncio.get_running_loop().create_future()
        self._pending_replies[correlation] = future

        props = Properties(PacketTypes.PUBLISH)
        props.ResponseTopic = self.reply_topic
        props.CorrelationData = correlation

        try:
            self._client.publish(topic, payload, qos=1, properties=props)
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"No reply from {self.peer_name} within {timeout}s")
            return None
        finally:
            self._pending_replies.pop(correlation, None)

    async def send_reliable(self, payload: bytes) -> None:
        topic = self.inbox_topic(self.peer_name, DeliveryChannel.RELIABLE.value)
        result = self._client.publish(topic, payload, qos=1)
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            # Paho keeps QoS 1 messages and sends them after reconnecting
            logger.debug(f"Reliable payload queued locally (rc={result.rc})")

    async def update_context(self, payload: bytes) -> None:
        topic = self.inbox_topic(self.peer_name, DeliveryChannel.CONTEXT.value)
        self._client.publish(topic, payload, qos=1, retain=True)


async def check_broker(config: MQTTConfig) -> bool:
    """Check if the MQTT broker is reachable."""
    try:
        test_client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, protocol=mqtt.MQTTv5)
        test_client.connect(config.broker, config.port, keepalive=5)
        test_client.disconnect()
        return True
    except Exception:
        return False
