"""
Dirkeeper - Lifecycle Core
============================
Provisions, starts, stops and reconfigures an embedded directory server.

This package contains:
    - connectors.py  : Connector ports and keystore bindings
    - resources.py   : Default asset lookup across bundle + fragments
    - templates.py   : Config template token substitution
    - provisioner.py : Install layout and default file copies
    - credentials.py : Keystore password pin files
    - locks.py       : Server / backend lock files
    - backends.py    : Backend boundary and import records
    - loader.py      : Exclusive-locked bulk LDIF reload
    - process.py     : Engine boundary and subprocess implementation
    - lifecycle.py   : The controller tying it all together
    - log.py         : Dual-output supervisor logger

Usage:
    from keeper import LifecycleController

    controller = LifecycleController(server, ResourceResolver())
    controller.start()
"""

from keeper.lifecycle import LifecycleController, ServerState
from keeper.resources import ResourceResolver

__all__ = ["LifecycleController", "ServerState", "ResourceResolver"]
