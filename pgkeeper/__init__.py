"""
pgkeeper

Coordinateur de failover pour un cluster PostgreSQL à un primaire et
plusieurs standbys. Un processus par noeud: heartbeat des pairs, quorum
synchrone côté primaire, promotion automatique côté standby.
"""

__version__ = "1.0.0"
