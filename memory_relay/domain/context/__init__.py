# This module handles context engineering for relayed conversations

# +---------------------------+
# |      Memory               |   (Durable, one record per conversation)
# |---------------------------|
# | Canonical facts           |
# | Structured summary        |
# | Raw history               |
# +---------------------------+

# +---------------------------+
# |      State                |   (Per request, serialized per conversation)
# |---------------------------|
# | Pending confirmation      |
# | Turn counter              |
# | Session lock              |
# +---------------------------+

#    \    /
#     \  /
#      \/
# +-------------------------------+
# |           Context             |   (Assembled for each upstream call)
# |-------------------------------|
# | Global instruction            |
# | Canon memory block            |
# | Structured summary            |
# | Confirmation notice           |
# | Newest N client messages      |
# +-------------------------------+
#         |
#         v
#   [upstream chat completion]
