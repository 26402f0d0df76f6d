import os
import tempfile

# 测试使用独立的 SQLite 文件，需在导入 core.db 之前设置
os.environ.setdefault(
    "DB",
    "sqlite:///" + os.path.join(tempfile.mkdtemp(prefix="storefront-test-"), "test.db"),
)
