# State = everything a request needs to resume a conversation safely.

# Which yes/no decision is outstanding, and whether it was already offered

# How many turns have passed since the last fact-extraction pass

# Who currently owns the conversation (one request, or its finalize pass)
