"""bulkmart：本地大宗商品集市的预约 / 履约核心服务。"""

__version__ = "1.0.0"
