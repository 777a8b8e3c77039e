"""
Conversation Flow Engine API 主入口
"""
import logging
from dotenv import load_dotenv

# 加载环境变量
load_dotenv()

from flow_engine.config import Settings
from flow_engine.cli import run_server

settings = Settings.from_env()

# 配置日志
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


if __name__ == "__main__":
    # 开发模式热重载，生产模式按 API_WORKERS 启动多进程
    run_server(settings, reload=settings.api_reload)
