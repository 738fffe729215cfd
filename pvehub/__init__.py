"""pvehub - 多集群虚拟化平台连接与命令调度引擎。"""
__version__ = "0.1.0"
