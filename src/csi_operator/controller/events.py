"""Event reasons and types posted on CSI objects."""

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

FETCH_ERROR = "FetchError"
SYNC_ERROR = "SyncError"
RBAC_SYNCED = "RBACSynced"
SECRETS_SYNCED = "SecretsSynced"
STORAGE_CLASSES_SYNCED = "StorageClassesSynced"
CONFIG_MAPS_SYNCED = "ConfigMapsSynced"
NODE_DRIVER_SYNCED = "NodeDriverSynced"
CONTROLLER_DRIVER_SYNCED = "ControllerDriverSynced"
