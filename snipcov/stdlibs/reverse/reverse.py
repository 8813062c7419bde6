from unicode import utf8


def reverse_bytes(s):
    """Reverse byte by byte; may split multi-byte characters."""
    return s.encode("utf-8")[::-1]


def reverse_runes(s):
    return s[::-1]


def reverse_checked(data):
    if not utf8.valid(data):
        raise ValueError("input is not valid UTF-8")
    return data.decode("utf-8")[::-1]
