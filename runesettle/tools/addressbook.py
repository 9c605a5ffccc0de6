"""Saved destination addresses of an owner.

The first saved address becomes the primary one. Removing the primary address promotes the oldest remaining address. Every settlement to a saved address bumps its usage counter.
"""

import datetime
import logging

from .. import lock
from ..bitcoin.address import classify
from ..models import SavedAddress
from ..models import ValidationError


logger = logging.getLogger(__name__)


def _now():
    return datetime.datetime.utcnow()


class SavedAddressBook:

    def __init__(self, conflict_resolver, network=None, clock=_now):
        """
        :param network: Only accept addresses of this network
        """
        self.conflict_resolver = conflict_resolver
        self.network = network
        self.clock = clock

    def get_address(self, session, owner_id, address_id):
        saved = session.query(SavedAddress).filter_by(owner_id=owner_id, id=address_id).first()
        if not saved:
            raise ValidationError("No saved address {} for {}".format(address_id, owner_id))
        return saved

    def add(self, owner_id, address, label=None):
        """Save a validated address.

        :return: Saved address as dict

        :raise ValidationError: Invalid address or already saved
        """

        classification = classify(address, self.network)
        if not classification.valid:
            raise ValidationError("Cannot save {}: {}".format(address, classification.error))

        with lock.owner_lock(owner_id):

            @self.conflict_resolver.managed_transaction
            def _add(session):
                existing = session.query(SavedAddress).filter_by(owner_id=owner_id)
                if existing.filter_by(address=classification.address).count():
                    raise ValidationError("Address {} is already saved".format(classification.address))

                saved = SavedAddress(
                    owner_id=owner_id,
                    address=classification.address,
                    label=label,
                    address_type=classification.script_type,
                    network=classification.network,
                    is_primary=existing.count() == 0,
                    use_count=0,
                    created_at=self.clock())
                session.add(saved)
                session.flush()
                return saved.to_view()

            return _add()

    def remove(self, owner_id, address_id):
        """Forget an address. Promote the oldest remaining one if it was primary."""

        with lock.owner_lock(owner_id):

            @self.conflict_resolver.managed_transaction
            def _remove(session):
                saved = self.get_address(session, owner_id, address_id)
                was_primary = saved.is_primary
                session.delete(saved)
                session.flush()

                if was_primary:
                    oldest = session.query(SavedAddress).filter_by(owner_id=owner_id).order_by(SavedAddress.created_at, SavedAddress.id).first()
                    if oldest:
                        oldest.is_primary = True

            _remove()

    def update_label(self, owner_id, address_id, label):

        @self.conflict_resolver.managed_transaction
        def _update(session):
            saved = self.get_address(session, owner_id, address_id)
            saved.label = label
            return saved.to_view()

        return _update()

    def set_primary(self, owner_id, address_id):

        with lock.owner_lock(owner_id):

            @self.conflict_resolver.managed_transaction
            def _set(session):
                target = self.get_address(session, owner_id, address_id)
                for saved in session.query(SavedAddress).filter_by(owner_id=owner_id):
                    saved.is_primary = saved.id == target.id
                return target.to_view()

            return _set()

    def record_usage(self, owner_id, address):
        """Count a settlement to the address, if it is saved.

        :return: True if the address was found
        """

        @self.conflict_resolver.managed_transaction
        def _record(session):
            saved = session.query(SavedAddress).filter_by(owner_id=owner_id, address=address).first()
            if not saved:
                return False
            saved.use_count += 1
            saved.last_used_at = self.clock()
            return True

        return _record()

    def get_primary(self, owner_id):
        """:return: The primary address as dict, falling back to the oldest one, or None"""

        @self.conflict_resolver.managed_transaction
        def _get(session):
            saved = session.query(SavedAddress).filter_by(owner_id=owner_id).order_by(SavedAddress.is_primary.desc(), SavedAddress.created_at, SavedAddress.id).first()
            return saved.to_view() if saved else None

        return _get()

    def list(self, owner_id):
        """All saved addresses, primary first, then by latest use."""

        @self.conflict_resolver.managed_transaction
        def _list(session):
            addresses = session.query(SavedAddress).filter_by(owner_id=owner_id).all()
            addresses.sort(key=lambda a: (not a.is_primary, -(a.last_used_at or a.created_at).timestamp(), a.id))
            return [a.to_view() for a in addresses]

        return _list()
