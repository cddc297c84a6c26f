"""
Dirkeeper - Console
=====================
Web console in front of the lifecycle controller in `keeper`.

    main.py      -> app factory, startup autostart, shutdown stop, /ws
    routes.py    -> /api endpoints
    manager.py   -> one controller, operations serialized on an asyncio.Lock
    config.py    -> config.yaml and .env
    auth.py      -> operator password and bearer tokens
    websocket.py -> log and status fan-out with a replay backlog
"""
