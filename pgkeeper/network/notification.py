"""
pgkeeper - Network: Peer Notifications

Notifications légères entre coordinateurs, en datagrammes UDP JSON.

Un standby PostgreSQL refuse LISTEN/NOTIFY pendant la recovery, le canal
de notification passe donc hors de la base: chaque coordinateur écoute
sur notify_port, l'adresse d'un pair est l'hôte de son conninfo.
Seules les adresses des membres connus peuvent déclencher un rafraîchissement.
"""

import asyncio
import json
import socket
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Tuple

import psycopg
from psycopg.conninfo import conninfo_to_dict

MEMBERSHIP_CHANGED = "membership_changed"

MAX_DATAGRAM_SIZE = 4096

# Sources toujours acceptées (CLI exécutée sur le noeud)
LOOPBACK_SOURCES: FrozenSet[str] = frozenset({"127.0.0.1", "::1"})


class NotificationFormatError(ValueError):
    """Datagramme reçu illisible."""

    pass


@dataclass
class PeerNotification:
    """Message échangé entre coordinateurs."""

    type: str
    sender: str
    reason: str = ""
    sent_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_bytes(self) -> bytes:
        return json.dumps(asdict(self)).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "PeerNotification":
        """
        Décode un datagramme.

        Raises:
            NotificationFormatError: Si JSON invalide ou champs manquants
        """
        if len(data) > MAX_DATAGRAM_SIZE:
            raise NotificationFormatError(f"datagram too large ({len(data)} bytes)")
        try:
            payload: Dict[str, Any] = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise NotificationFormatError(f"invalid notification payload: {e}") from e

        if not isinstance(payload, dict) or "type" not in payload or "sender" not in payload:
            raise NotificationFormatError("notification requires 'type' and 'sender'")

        return cls(
            type=str(payload["type"]),
            sender=str(payload["sender"]),
            reason=str(payload.get("reason", "")),
            sent_at=str(payload.get("sent_at", "")),
        )


def endpoint_host(endpoint: str) -> Optional[str]:
    """
    Extrait l'hôte réseau d'une chaîne de connexion libpq.

    hostaddr est prioritaire sur host; pour une liste multi-hôtes, le premier
    est retenu. Un socket Unix (chemin absolu) ne désigne aucun hôte distant.

    Returns:
        L'hôte, ou None si non dérivable
    """
    try:
        params = conninfo_to_dict(endpoint)
    except psycopg.Error:
        return None

    for key in ("hostaddr", "host"):
        value = params.get(key)
        if not value:
            continue
        first = str(value).split(",")[0].strip()
        if first and not first.startswith("/"):
            return first
    return None


def normalize_source(address: str) -> str:
    """Adresse source comparable: sans zone IPv6, IPv4 mappée ramenée en IPv4."""
    address = address.split("%", 1)[0]
    if address.lower().startswith("::ffff:") and "." in address:
        return address[7:]
    return address


async def resolve_sources(endpoints: Iterable[str]) -> FrozenSet[str]:
    """
    Adresses autorisées à émettre des notifications.

    L'hôte de chaque conninfo est résolu par la boucle asyncio; un hôte
    non résolu est conservé tel quel. Le loopback est toujours inclus.

    Args:
        endpoints: Conninfos des membres connus

    Returns:
        Ensemble d'adresses normalisées
    """
    loop = asyncio.get_running_loop()
    sources = set(LOOPBACK_SOURCES)
    for endpoint in endpoints:
        host = endpoint_host(endpoint)
        if host is None:
            continue
        try:
            infos = await loop.getaddrinfo(host, None, type=socket.SOCK_DGRAM)
        except OSError:
            sources.add(normalize_source(host))
            continue
        sources.update(normalize_source(str(info[4][0])) for info in infos)
    return frozenset(sources)


class PeerNotifier:
    """Envoi fire-and-forget de notifications aux pairs."""

    def __init__(self, port: int) -> None:
        """
        Args:
            port: Port UDP d'écoute des coordinateurs (identique sur tout le cluster)
        """
        self._port = port

    @property
    def port(self) -> int:
        return self._port

    async def send(self, host: str, notification: PeerNotification) -> None:
        """
        Envoie un datagramme à un pair.

        Raises:
            OSError: Résolution ou envoi impossible
        """
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            asyncio.DatagramProtocol, remote_addr=(host, self._port)
        )
        try:
            transport.sendto(notification.to_bytes())
        finally:
            transport.close()


class NotificationListener(asyncio.DatagramProtocol):
    """
    Réception des notifications.

    Le callback est appelé depuis la boucle asyncio hors du cycle principal:
    il ne doit que positionner un drapeau. Il reçoit l'adresse source du
    datagramme, le filtrage des émetteurs lui revient.
    """

    def __init__(
        self,
        on_notification: Callable[[PeerNotification, Tuple[str, int]], None],
        on_error: Optional[Callable[[str, Tuple[str, int]], None]] = None,
    ) -> None:
        self._on_notification = on_notification
        self._on_error = on_error
        self._transport: Optional[asyncio.DatagramTransport] = None

    async def start(self, host: str, port: int) -> None:
        """Ouvre le socket d'écoute."""
        loop = asyncio.get_running_loop()
        await loop.create_datagram_endpoint(lambda: self, local_addr=(host, port))

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport  # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        try:
            notification = PeerNotification.from_bytes(data)
        except NotificationFormatError as e:
            if self._on_error:
                self._on_error(str(e), addr)
            return
        self._on_notification(notification, addr)

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    @property
    def is_listening(self) -> bool:
        return self._transport is not None

    @property
    def local_port(self) -> Optional[int]:
        if self._transport is None:
            return None
        return self._transport.get_extra_info("sockname")[1]
