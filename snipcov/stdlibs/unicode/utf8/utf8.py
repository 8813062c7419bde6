def valid(data):
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return True


def rune_count(data):
    return len(data.decode("utf-8", errors="replace"))
