"""
Devices Service package for the Device Inventory backend.

This package exposes device CRUD and guards device writes with a
configuration-driven validator. It provides:

- app.main: API surface for devices, validation stats, and health.
- app.validation: Rule document loading, the validation engine, and the
  ASGI middleware that applies it.
- app.devices: Device models and the repository used by the routes.

Guidelines:
- The rule document is loaded once at startup; a bad document stops the
  service from starting rather than running with partial rules.
- Validation is in-memory and bounded by payload size; keep it free of I/O.
"""
