CONFIG_FILE_NAMES = ("taskrunner.yaml", "taskrunner.yml", "taskrunner.json")
PACKAGE_JSON_FILE = "package.json"

INIT_CWD_ENV = "INIT_CWD"
PATH_ENV = "PATH"

NPX_COMMAND = "npx"
NPM_SPECIFIER_PREFIX = "npm:"

DEFAULT_RUNTIME_COMMAND = "deno"
DEFAULT_INSTALL_COMMAND = "npm install"
DEFAULT_NODE_MODULES_DIR = "node_modules"
NODE_MODULES_BIN_DIR = ".bin"

# Exit code reported by the shell engine when a command cannot be found
COMMAND_NOT_FOUND_EXIT_CODE = 127

# Manifest dependency sections, in the order npm merges them
MANIFEST_DEPENDENCY_KEYS = ("devDependencies", "dependencies")

UNSUPPORTED_SPECIFIER_PREFIXES = (
    "file:",
    "link:",
    "workspace:",
    "git:",
    "git+",
    "github:",
    "http:",
    "https:",
)
