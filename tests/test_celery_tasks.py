"""Celery 任务单元测试"""
import pytest
from unittest.mock import Mock, patch

from tasks.flash_sale_tasks import (
    sweep_expired_reservations,
    purge_finalized_reservations,
    refresh_sale_statuses,
)


class TestFlashSaleTasks:
    """秒杀 Celery 任务测试类"""

    def test_sweep_expired_reservations_success(self):
        """测试过期预占清理任务成功"""
        sweeper_mock = Mock()
        sweeper_mock.sweep.return_value = 5
        db_mock = Mock()

        with patch('tasks.flash_sale_tasks.SessionLocal') as mock_session_local, \
             patch('tasks.flash_sale_tasks.ExpirySweeper') as mock_sweeper_cls, \
             patch('tasks.flash_sale_tasks.redis_client') as mock_redis, \
             patch('tasks.flash_sale_tasks.redlock') as mock_redlock:

            mock_session_local.return_value = db_mock
            mock_sweeper_cls.return_value = sweeper_mock

            result = sweep_expired_reservations(batch_size=100)

            assert result == "成功释放 5 条过期预占记录"
            mock_sweeper_cls.assert_called_once_with(db_mock, mock_redis, mock_redlock)
            sweeper_mock.sweep.assert_called_once_with(100)
            db_mock.close.assert_called_once()

    def test_sweep_expired_reservations_exception(self):
        """测试过期预占清理任务异常"""
        db_mock = Mock()
        sweeper_mock = Mock()
        sweeper_mock.sweep.side_effect = Exception("清理过程出错")

        with patch('tasks.flash_sale_tasks.SessionLocal') as mock_session_local, \
             patch('tasks.flash_sale_tasks.ExpirySweeper') as mock_sweeper_cls:

            mock_session_local.return_value = db_mock
            mock_sweeper_cls.return_value = sweeper_mock

            with pytest.raises(Exception) as exc_info:
                sweep_expired_reservations(batch_size=50)

            assert "清理过程出错" in str(exc_info.value)
            db_mock.rollback.assert_called_once()
            db_mock.close.assert_called_once()

    def test_purge_finalized_reservations(self):
        """测试历史预占清理任务"""
        sweeper_mock = Mock()
        sweeper_mock.purge_finalized.return_value = 12
        db_mock = Mock()

        with patch('tasks.flash_sale_tasks.SessionLocal') as mock_session_local, \
             patch('tasks.flash_sale_tasks.ExpirySweeper') as mock_sweeper_cls, \
             patch('tasks.flash_sale_tasks.redis_client'):

            mock_session_local.return_value = db_mock
            mock_sweeper_cls.return_value = sweeper_mock

            result = purge_finalized_reservations()

            assert result == "成功删除 12 条历史预占记录"
            db_mock.close.assert_called_once()

    def test_refresh_sale_statuses(self):
        """测试活动状态推进任务"""
        service_mock = Mock()
        service_mock.refresh_statuses.return_value = {"activated": 1, "ended": 2}
        db_mock = Mock()

        with patch('tasks.flash_sale_tasks.SessionLocal') as mock_session_local, \
             patch('tasks.flash_sale_tasks.FlashSaleService') as mock_service_cls, \
             patch('tasks.flash_sale_tasks.redis_client'):

            mock_session_local.return_value = db_mock
            mock_service_cls.return_value = service_mock

            result = refresh_sale_statuses()

            assert result == {"activated": 1, "ended": 2}
            db_mock.close.assert_called_once()

    def test_refresh_sale_statuses_exception(self):
        """测试活动状态推进任务异常"""
        db_mock = Mock()

        with patch('tasks.flash_sale_tasks.SessionLocal') as mock_session_local, \
             patch('tasks.flash_sale_tasks.FlashSaleService') as mock_service_cls:

            mock_session_local.return_value = db_mock
            mock_service_cls.side_effect = Exception("数据库错误")

            with pytest.raises(Exception) as exc_info:
                refresh_sale_statuses()

            assert "数据库错误" in str(exc_info.value)
            db_mock.rollback.assert_called_once()
