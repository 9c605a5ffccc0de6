"""Nested dictionary helpers for configuration overrides."""


def merge_dict(a, b):
    """Merge ``b`` into ``a`` in place, recursing into nested dicts.

    Values of ``b`` win.

    :return: ``a``
    """
    for key, value in b.items():
        if isinstance(value, dict) and isinstance(a.get(key), dict):
            merge_dict(a[key], value)
        else:
            a[key] = value
    return a
