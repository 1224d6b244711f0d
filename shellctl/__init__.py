"""MQTT Shell Controller - operator side of the encrypted shell."""
