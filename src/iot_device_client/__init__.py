"""
IoT Device Client — single-connection MQTT client for a cloud IoT broker.

Signs a short-lived ES256 JWT from the device's private key, connects with it as the
password, keeps the connection alive across network drops, subscribes to a fixed topic
and publishes a message on a timer.
"""
