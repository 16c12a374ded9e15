"""Example pyHandler: adds two integers."""


def handler(data, request):
    return {"sum": data["a"] + data["b"]}
