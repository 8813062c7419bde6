def has_prefix(s, prefix):
    return s.startswith(prefix)


def has_suffix(s, suffix):
    return s.endswith(suffix)


def to_upper(s):
    return s.upper()


def repeat(s, count):
    if count < 0:
        raise ValueError("strings: negative repeat count")
    return s * count


def join(elems, sep):
    return sep.join(elems)
