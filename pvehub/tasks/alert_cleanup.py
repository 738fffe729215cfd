"""
告警清理任务模块。

定期删除解除时间超过保留期限的告警，防止内存中的告警记录无限增长。
默认保留 30 天、每天执行一次，可通过 PVEHUB_ALERT_RETENTION_DAYS 配置。
"""
import asyncio
import logging

from pvehub.services.alert_engine import AlertEngine

logger = logging.getLogger(__name__)


async def alert_cleanup_loop(engine: AlertEngine, retention_days: int = 30, interval: float = 86400):
    """
    告警清理后台循环。

    Args:
        engine: 告警引擎实例
        retention_days: 已解除告警保留天数
        interval: 两次清理之间的间隔（秒）
    """
    logger.info(f"Starting alert cleanup loop with {retention_days} days retention")

    while True:
        try:
            deleted = engine.cleanup_resolved(retention_days)
            if deleted > 0:
                logger.info(f"Alert cleanup: deleted {deleted} alerts resolved more than {retention_days} days ago")
            else:
                logger.debug(f"Alert cleanup: no alerts older than {retention_days} days found")
        except Exception as e:
            logger.exception(f"Alert cleanup error: {e}")

        await asyncio.sleep(interval)
