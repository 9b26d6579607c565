"""rtl-slurp: tail rtl_433 JSON logs and ship the readings to InfluxDB."""

__version__ = "0.1.0"
