import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

# "memory" keeps fan-out inside one process, "redis" shares it across processes
RELAY_BROKER = os.getenv("RELAY_BROKER", "memory")

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

SEND_TIMEOUT_SECONDS = float(os.getenv("SEND_TIMEOUT_SECONDS", 5))
ACK_STATUS = "acknowledged"
ACK_MESSAGE = os.getenv("ACK_MESSAGE", "Ambulance is on the way!")

RELAY_URL = os.getenv("RELAY_URL", "ws://localhost:8000/ws")
SIMULATION_INTERVAL_SECONDS = float(os.getenv("SIMULATION_INTERVAL_SECONDS", 2))
RECONNECT_DELAY_SECONDS = float(os.getenv("RECONNECT_DELAY_SECONDS", 1))
RECONNECT_MAX_DELAY_SECONDS = float(os.getenv("RECONNECT_MAX_DELAY_SECONDS", 30))
