import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from salvagesync.concurrency import TaskGroup, WeightedSemaphore


def test_weighted_acquire_blocks_until_release():
    sem = WeightedSemaphore(3)
    sem.acquire(2)
    acquired = threading.Event()

    def take_two():
        sem.acquire(2)
        acquired.set()

    t = threading.Thread(target=take_two)
    t.start()
    assert not acquired.wait(0.1)
    sem.release(2)
    assert acquired.wait(5)
    t.join()
    assert sem.in_use == 2


def test_weight_larger_than_size_is_rejected():
    with pytest.raises(ValueError):
        WeightedSemaphore(1).acquire(2)
    with pytest.raises(ValueError):
        WeightedSemaphore(0)


def test_task_group_waits_for_nested_tasks():
    done = []
    guard = threading.Lock()

    with ThreadPoolExecutor(max_workers=4) as executor:
        group = TaskGroup(executor)

        def task(level):
            time.sleep(0.01)
            if level < 3:
                group.spawn(task, level + 1)
                group.spawn(task, level + 1)
            with guard:
                done.append(level)

        group.spawn(task, 0)
        assert group.wait(timeout=10)

    # 1 + 2 + 4 + 8 tasks
    assert len(done) == 15
    assert group.pending == 0


def test_task_group_survives_failing_task():
    with ThreadPoolExecutor(max_workers=2) as executor:
        group = TaskGroup(executor)

        def boom():
            raise RuntimeError("boom")

        group.spawn(boom)
        assert group.wait(timeout=5)
