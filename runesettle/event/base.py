import abc
import datetime
import decimal
import json


class EventHandler(abc.ABC):
    """Deliver settlement status changes to the interested parties.
    """

    @abc.abstractmethod
    def trigger(self, event_name, data):
        """Notify about a new event.

        :param event_name: Event name as a string, see :py:mod:`runesettle.event.events`

        :param data: Related data as dictionary
        """


def event_json_dumps(event_data):
    """Serializes the event as JSON.

    Decimals are converted to string, not float, to prevent the loss of accuracy. Datetimes are written in ISO 8601.
    """

    def default(obj):
        if isinstance(obj, decimal.Decimal):
            return str(obj)
        if isinstance(obj, datetime.datetime):
            return obj.isoformat()
        raise TypeError("Cannot serialize {!r}".format(obj))

    return json.dumps(event_data, default=default)
