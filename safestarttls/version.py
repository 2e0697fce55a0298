VERSION = "0.3.0"
SAFESTARTTLS = "safestarttls " + VERSION
