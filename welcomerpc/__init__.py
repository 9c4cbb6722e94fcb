'''
Minimal unary RPC skeleton, serving a welcome greeting over TCP:
- records as immutable pydantic models, encoded with orjson
- service contracts described in plain python (`service/register.py`)
- asyncio server handling each connection concurrently (`serve/server.py`)
- blocking client connection & stub with per-call deadlines (`serve/client.py`)

Quick start:

    from welcomerpc.serve.server import bind
    from welcomerpc.serve.client import connect
    from welcomerpc.service.service import WelcomeServicer
    from welcomerpc.service.message import WelcomeRequest

    with bind('127.0.0.1:50051', WelcomeServicer()) as server:
        server.start()
        with connect('127.0.0.1:50051') as conn:
            print(conn.call(WelcomeRequest(name='Lukman')).message)
'''
