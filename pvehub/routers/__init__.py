"""
pvehub 路由模块包 (Router Module Package)

- connections.py: 端点注册、移除、连通性测试和连接统计
- inventory.py: 节点与虚拟机快照查询、虚拟机配置读写
- batch.py: 单目标和批量命令调度
- alerts.py: 告警查询、确认、解除、删除和批量操作
- events_ws.py: WebSocket 事件订阅（快照帧 + 增量事件）
"""
