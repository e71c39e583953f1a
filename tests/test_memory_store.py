from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

from labalert.models.critical_models import NotificationStatusEnum
from labalert.models.qc_models import QCStatusEnum
from labalert.store.memory import InMemoryAlertStore

from conftest import T0, make_critical_result


class TestInMemoryAlertStore:

    def test_concurrent_increments_are_not_lost(self, glucose_target):
        store = InMemoryAlertStore()
        statuses = [QCStatusEnum.PASS, QCStatusEnum.WARNING, QCStatusEnum.FAIL]

        def count(i):
            return store.increment_statistics(glucose_target.key, f"RUN_{i}", statuses[i % 3], T0)

        with ThreadPoolExecutor(max_workers=8) as pool:
            # each id twice, so half the calls are redeliveries
            results = list(pool.map(count, list(range(300)) * 2))

        stats = store.get_statistics(glucose_target.key)
        assert results.count(True) == 300
        assert stats.total_runs == 300
        assert stats.pass_count == stats.warning_count == stats.fail_count == 100

    def test_returned_statistics_are_a_snapshot(self, glucose_target):
        store = InMemoryAlertStore()
        store.increment_statistics(glucose_target.key, "RUN_1", QCStatusEnum.PASS, T0)

        snapshot = store.get_statistics(glucose_target.key)
        snapshot.total_runs = 99

        assert store.get_statistics(glucose_target.key).total_runs == 1

    def test_compare_and_set_rejects_stale_version(self):
        store = InMemoryAlertStore()
        result = make_critical_result()
        store.insert_critical_result(result)
        first = replace(result, notification_status=NotificationStatusEnum.NOTIFIED, version=1)
        second = replace(result, notification_status=NotificationStatusEnum.ACKNOWLEDGED, version=1)

        assert store.compare_and_set_critical_result(first, expected_version=0)
        assert not store.compare_and_set_critical_result(second, expected_version=0)
        assert store.get_critical_result("CR-1").notification_status == NotificationStatusEnum.NOTIFIED
