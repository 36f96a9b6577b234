import functools


def mergereplace(defaults, *overrides):
    """
    Returns a new dictionary obtained by deep-merging multiple sets of overrides
    into defaults, with precedence from right to left.

    Only dictionaries are merged. Any other value, including a list, in an override
    replaces the value in the defaults entirely.
    """
    def mergereplace2(defaults, overrides):
        if isinstance(defaults, dict) and isinstance(overrides, dict):
            merged = dict(defaults)
            for key, value in overrides.items():
                if key in defaults:
                    merged[key] = mergereplace2(defaults[key], value)
                else:
                    merged[key] = value
            return merged
        else:
            return overrides if overrides is not None else defaults
    return functools.reduce(mergereplace2, overrides, defaults)


def nest(path, value):
    """
    Returns a nested dictionary where the given dotted path leads to the value.

    Dots that are escaped with a backslash are part of the key.
    """
    keys = []
    current = ""
    escaped = False
    for char in path:
        if escaped:
            current += char
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == ".":
            keys.append(current)
            current = ""
        else:
            current += char
    keys.append(current)
    for key in reversed(keys):
        value = { key: value }
    return value

