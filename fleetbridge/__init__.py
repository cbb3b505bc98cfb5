"""
Fleet Bridge internal package.

Provides modular components for the Fleet MQTT Bridge:
  - config: Configuration and logging
  - cache: TTL-based response caching
  - session: Viewer role and project
  - api_client: Fleet backend REST API wrapper
  - models: Robot, Section and event records
  - topics: Topic resolution and the fleet snapshot
  - classifier: Inbound payload classification
  - dedup: Duplicate suppression ledgers
  - projection: Read-modify-write of robot telemetry
  - notifier: Visibility, toasts, emails and the notification feed
  - commands: Schedule and clock command strings
  - mqtt_client: Per-section MQTT connections and one-shot publishing
  - pipeline: Inbound message flow and outbound commands
  - routes: FastAPI REST endpoint definitions
"""
