REDIS_BOOKING_CHANNEL = "booking:channel:{booking_id}" # booking id - pub/sub channel name
REDIS_MEMBERS_KEY = "booking:members:{booking_id}" # booking id - set of connection IDs

# **Channel payload**
# - `bookingId` = room the event belongs to
# - `exclude` = connection id of the sender, or null when nobody is excluded
# - `message` = the relay->peer message as delivered to clients
