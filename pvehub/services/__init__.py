"""连接与命令调度引擎的核心服务。"""
