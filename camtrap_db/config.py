"""
Configuration constants for the camera-trap metadata store.
"""
from datetime import timedelta

# --- Store File Names ---
DATA_FILE_NAME = "TimelapseData.ddb"
TEMPLATE_FILE_NAME = "TimelapseTemplate.tdb"
BACKUP_FOLDER = "Backups"
LOG_FILE_NAME = "camtrap_db.log"

# --- Tables ---
TEMPLATE_TABLE = "TemplateTable"
DATA_TABLE = "DataTable"
IMAGE_SET_TABLE = "ImageSetTable"
MARKERS_TABLE = "MarkersTable"

INFO_TABLE = "Info"
DETECTION_CATEGORIES_TABLE = "DetectionCategories"
CLASSIFICATION_CATEGORIES_TABLE = "ClassificationCategories"
DETECTIONS_TABLE = "Detections"
CLASSIFICATIONS_TABLE = "Classifications"
RECOGNITION_TABLES = (
    CLASSIFICATIONS_TABLE,
    DETECTIONS_TABLE,
    CLASSIFICATION_CATEGORIES_TABLE,
    DETECTION_CATEGORIES_TABLE,
    INFO_TABLE,
)

FOLDER_TEMPLATE_TABLE = "FolderDataTemplateTable"
FOLDER_INFO_TABLE = "FolderDataInfo"
LEVEL_TABLE_PREFIX = "Level"

REQUIRED_TABLES = (TEMPLATE_TABLE, DATA_TABLE, IMAGE_SET_TABLE, MARKERS_TABLE)

# --- Columns ---
ID = "Id"
FILE = "File"
RELATIVE_PATH = "RelativePath"
DATE_TIME = "DateTime"
DELETE_FLAG = "DeleteFlag"
FOLDER_DATA_PATH = "FolderDataPath"
LEVEL = "Level"

# Structural fields every file schema carries, in their default order
STANDARD_LABELS = (FILE, RELATIVE_PATH, DATE_TIME, DELETE_FLAG)

# --- CSV Exchange ---
# Labels tolerated in an imported header even though no field carries them
DEPRECATED_LABELS = ("Date", "Time", "Folder", "ImageQuality")
ROOT_FOLDER_LABEL = "RootFolder"
DATE_LABEL = "Date"
TIME_LABEL = "Time"

CSV_ERROR_CAP = 2
IMPORT_BATCH_SIZE = 2000
EXPORT_PROGRESS_STRIDE = 5000

# --- Date / Time Formats ---
DATETIME_DB_FORMAT = "%Y-%m-%d %H:%M:%S"
DATETIME_T_FORMAT = "%Y-%m-%dT%H:%M:%S"
DATE_CSV_FORMAT = "%d-%b-%Y"
TIME_CSV_FORMAT = "%H:%M:%S"
DATETIME_PARSE_FORMATS = (
    DATETIME_DB_FORMAT,
    DATETIME_T_FORMAT,
    "%Y-%m-%dT%H:%M:%S.%fZ",
    "%d-%b-%Y %H:%M:%S",
)
DATE_PARSE_FORMATS = (DATE_CSV_FORMAT, "%Y-%m-%d")
TIME_PARSE_FORMATS = (TIME_CSV_FORMAT, "%H:%M")
DEFAULT_DATETIME = "1900-01-01 12:00:00"

# --- Bulk Operations ---
INSERT_BATCH_SIZE = 5000
MERGE_PROGRESS_STEPS = 6

# --- Backups ---
BACKUP_INTERVAL = timedelta(minutes=30)

# --- Progress ---
PROGRESS_THROTTLE_SECONDS = 0.25

# --- Paths ---
# Relative paths are stored with the separator the store format has always used
PATH_SEPARATOR = "\\"

# --- Recognition Defaults ---
UNKNOWN_DETECTOR_VERSION = "vUnknown"
UNKNOWN_VALUE = "unknown"
TYPICAL_DETECTION_THRESHOLD = 0.2
CONSERVATIVE_DETECTION_THRESHOLD = 0.05
TYPICAL_CLASSIFICATION_THRESHOLD = 0.5
BOUNDING_BOX_DISPLAY_THRESHOLD = 0.2

# --- Store Versioning ---
STORE_VERSION = "2.3.0.0"
BACKWARDS_COMPATIBILITY_VERSION = "2.3.0.0"

# --- Field Defaults ---
DEFAULT_FIELD_WIDTH = 100
