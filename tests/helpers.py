def events_for(outbound, target):
    """Outbound (event, payload) pairs addressed to one connection, in order."""
    return [(event.event, event.payload) for event in outbound if event.target == target]


def receive_until(websocket, event):
    """Read frames until one with the given event name arrives."""
    while True:
        message = websocket.receive_json()
        if message["event"] == event:
            return message
