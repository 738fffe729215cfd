"""
核心模块包 (Core Module Package)

配置管理、异常体系、依赖注入等基础组件。
Configuration, error taxonomy and dependency injection shared by the whole engine.
"""
