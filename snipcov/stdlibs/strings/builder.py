class Builder:
    """Accumulates strings and joins them once."""

    def __init__(self):
        self._parts = []

    def write_string(self, s):
        self._parts.append(s)
        return len(s)

    def len(self):
        return sum(len(p) for p in self._parts)

    def string(self):
        return "".join(self._parts)
