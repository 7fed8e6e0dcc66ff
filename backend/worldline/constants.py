SAVES_KEY = "worldline_saves"
AVATARS_KEY = "worldline_avatars"

DEFAULT_INVENTORY = "No items"
DEFAULT_LOCATION = "On the road"
SETUP_SUMMARY = "Initial setup"
NEW_GAME_SUMMARY = "New Game"
UNTITLED_STORY = "Untitled story"
IMPORTED_CONFIG_SUMMARY = "Imported configuration"
HISTORY_NODE_SUMMARY = "History node"
SUMMARY_EXCERPT_CHARS = 50

# 重建的祖先节点按一分钟间隔错开时间戳。
REBUILD_STEP_MS = 60 * 1000

EXPORT_FORMAT_VERSION = "2.5"

LAYOUT_X_SPACING = 250.0
LAYOUT_Y_SPACING = 150.0
LAYOUT_X_ORIGIN = 100.0
LAYOUT_SESSION_GAP = 200.0
