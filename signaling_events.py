# Inbound, client -> relay
FIND_RANDOM_MATCH = "find-random-match"
CANCEL_MATCH = "cancel-match"
SEND_OFFER = "send-offer"
SEND_ANSWER = "send-answer"
SEND_ICE_CANDIDATE = "send-ice-candidate"
END_CALL = "end-call"

# Outbound, relay -> client
CONNECTED = "connected"
MATCHED = "matched"
RECEIVE_OFFER = "receive-offer"
RECEIVE_ANSWER = "receive-answer"
RECEIVE_ICE_CANDIDATE = "receive-ice-candidate"
CALL_ENDED = "call-ended"
ERROR = "error"

# Relay kinds: kind -> (outbound event, payload field)
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"

RELAY_KINDS = {
    OFFER: (RECEIVE_OFFER, "offer"),
    ANSWER: (RECEIVE_ANSWER, "answer"),
    ICE_CANDIDATE: (RECEIVE_ICE_CANDIDATE, "candidate"),
}
