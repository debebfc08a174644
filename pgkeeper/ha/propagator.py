"""
pgkeeper - HA: Membership Propagator

Après toute modification du registre (admission, retrait, élection,
promotion), notifie chaque autre noeud de rafraîchir son cache.

Envoi fire-and-forget par pair: un pair injoignable est journalisé puis
ignoré, la transition locale n'est jamais bloquée.
"""

import asyncio

from ..logging.interfaces import IStructuredLogger
from ..network.notification import MEMBERSHIP_CHANGED, PeerNotification, PeerNotifier, endpoint_host
from .interfaces import NodeSet, PropagationReport


class MembershipPropagator:
    """Diffusion des notifications membership_changed."""

    # Borne de résolution + envoi par pair
    SEND_TIMEOUT: float = 1.0

    def __init__(self, notifier: PeerNotifier, self_name: str, logger: IStructuredLogger) -> None:
        self._notifier = notifier
        self._self_name = self_name
        self._logger = logger

    async def propagate(self, snapshot: NodeSet, reason: str) -> PropagationReport:
        report = PropagationReport()
        notification = PeerNotification(type=MEMBERSHIP_CHANGED, sender=self._self_name, reason=reason)

        for peer in snapshot.peers_of(self._self_name):
            host = endpoint_host(peer.endpoint)
            if host is None:
                self._logger.warn("Peer address cannot be derived, skipped", peer=peer.name, reason=reason)
                report.skipped.append(peer.name)
                continue

            try:
                await asyncio.wait_for(self._notifier.send(host, notification), timeout=self.SEND_TIMEOUT)
            except (OSError, asyncio.TimeoutError) as e:
                self._logger.warn(
                    "Peer notification failed, skipped",
                    peer=peer.name,
                    host=host,
                    error=str(e) or type(e).__name__,
                )
                report.skipped.append(peer.name)
                continue

            report.notified.append(peer.name)

        self._logger.info(
            "Membership change propagated",
            reason=reason,
            notified=report.notified,
            skipped=report.skipped,
        )
        return report
