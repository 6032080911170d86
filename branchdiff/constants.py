DEFAULT_DISK_CEILING_MB = 500
DEFAULT_OVERALL_TIMEOUT_SECONDS = 90.0
DEFAULT_CLONE_TIMEOUT_SECONDS = 60.0
DEFAULT_INSTALL_TIMEOUT_SECONDS = 90.0
DEFAULT_BUILD_TIMEOUT_SECONDS = 90.0
DEFAULT_READINESS_TIMEOUT_SECONDS = 90.0
DEFAULT_PROBE_INTERVAL_SECONDS = 2.0
DEFAULT_PROBE_REQUEST_TIMEOUT_SECONDS = 2.0
DEFAULT_NAVIGATION_TIMEOUT_MS = 30000
DEFAULT_VIEWPORT = {"width": 1280, "height": 900}
DEFAULT_LOG_RETENTION_CHARS = 3000
DEFAULT_DIFF_THRESHOLD = 0.1
DEFAULT_BASELINE_REF = "main"
DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_CLONE_HOST = "github.com"

JOB_LABELS = ("baseline", "candidate")

INSTALL_COMMAND = ["npm", "install", "--prefer-offline", "--legacy-peer-deps"]
