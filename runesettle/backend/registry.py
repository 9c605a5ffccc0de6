"""Bindings between backend roles and the service instances fulfilling them.
"""

from .base import ROLES


class BackendRegistry:
    """Hold one backend instance per role.

    Roles are listed in :py:data:`runesettle.backend.base.ROLES`.
    """

    def __init__(self):
        self.backends = {}

    def register(self, role, backend):
        """Register a backend instance for a role.

        :param role: ``signer``, ``broadcaster``, ``chain``, ``price_oracle`` or ``fee_oracle``

        :param backend: Instance of the matching interface in :py:mod:`runesettle.backend.base`
        """
        assert type(role) == str
        if role not in ROLES:
            raise ValueError("Unknown backend role {}".format(role))
        if not isinstance(backend, ROLES[role]):
            raise TypeError("Backend {} for {} does not implement {}".format(backend, role, ROLES[role].__name__))
        self.backends[role] = backend

    def get(self, role):
        try:
            return self.backends[role]
        except KeyError:
            raise LookupError("No backend configured for {}".format(role))

    def missing_roles(self):
        return sorted(set(ROLES) - set(self.backends))

    def all(self):
        return self.backends.items()
