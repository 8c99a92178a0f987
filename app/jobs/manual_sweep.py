"""过期预占清理本地执行脚本

    python -m app.jobs.manual_sweep --batch-size 200
    python -m app.jobs.manual_sweep --dry-run
"""

import argparse
import logging
from app.db.session import SessionLocal
from app.services.expiry_sweeper import ExpirySweeper
from app.core.redis import redis_client

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

def run_sweep(batch_size: int = 500, dry_run: bool = False, purge: bool = False) -> dict:
    """执行过期清理

    Args:
        batch_size: 批处理大小
        dry_run: 试运行模式，只统计到期预占数量
        purge: 同时删除超过保留期的历史记录

    本地执行不加分布式锁，与定时任务并发也是安全的。
    """
    db = SessionLocal()
    try:
        sweeper = ExpirySweeper(db, redis_client)
        if dry_run:
            due = sweeper.count_due()
            logger.info(f"试运行模式：发现 {due} 条过期预占记录待释放")
            return {"due": due}

        released = sweeper.sweep(batch_size)
        purged = sweeper.purge_finalized() if purge else 0
        logger.info(f"清理完成：释放 {released} 条过期预占，删除 {purged} 条历史记录")
        return {"released": released, "purged": purged}
    except Exception as e:
        logger.error(f"清理执行失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()

def main(argv=None):
    """主函数"""
    parser = argparse.ArgumentParser(description='秒杀过期预占清理工具')
    parser.add_argument(
        '--batch-size',
        type=int,
        default=500,
        help='批处理大小 (默认: 500)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='试运行模式，只统计不执行清理'
    )
    parser.add_argument(
        '--purge',
        action='store_true',
        help='同时删除超过保留期的历史预占记录'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='详细输出模式'
    )

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        result = run_sweep(args.batch_size, args.dry_run, args.purge)
    except Exception as e:
        print(f"❌ 执行失败: {str(e)}")
        return 1

    if args.dry_run:
        print(f"📊 试运行结果：发现 {result['due']} 条过期预占")
    else:
        print(f"✅ 清理完成：释放 {result['released']} 条，删除 {result['purged']} 条")
    return 0

if __name__ == "__main__":
    raise SystemExit(main())
