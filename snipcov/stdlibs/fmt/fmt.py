# Shadowed by the native fmt package when the default resolver chain is used.


def println(*args):
    print(*args)
    return 0


def sprint(*args):
    return "".join(str(a) for a in args)
