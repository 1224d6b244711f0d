"""
MQTT Shell shared protocol package.

Code both sides of the link need: the encrypted envelope, the message
schema and topic names, configuration, the error taxonomy and the MQTT
transport wrapper.
"""

__version__ = "1.0.0"
