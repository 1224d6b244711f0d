"""MQTT Shell Agent - executes commands received over the broker."""
