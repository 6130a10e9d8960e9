import asyncio
import importlib

import pytest


pytestmark = pytest.mark.asyncio


class Clock:
    def __init__(self, t=1000.0):
        self.t = t

    def __call__(self):
        return self.t


def _lease(tmp_path, owner, clock, **kw):
    lease = importlib.import_module('storage.lease')
    return lease.LeaseLock(str(tmp_path / 'm.sqlite3'), 'scan:r1', owner, clock=clock, **kw)


async def test_only_one_owner_until_expiry(tmp_path):
    clock = Clock()
    a = _lease(tmp_path, 'a', clock)
    b = _lease(tmp_path, 'b', clock)
    assert a.try_acquire()
    assert not b.try_acquire()
    assert b.current_owner() == 'a'
    # Reclaimable once the lease runs out
    clock.t += 31
    assert b.try_acquire()
    assert not a.renew()
    assert b.renew()


async def test_release_frees_the_lease(tmp_path):
    clock = Clock()
    a = _lease(tmp_path, 'a', clock)
    b = _lease(tmp_path, 'b', clock)
    assert a.try_acquire()
    a.release()
    assert a.current_owner() is None
    assert b.try_acquire()


async def test_held_raises_when_busy_and_releases_on_exit(tmp_path):
    lease_mod = importlib.import_module('storage.lease')
    clock = Clock()
    a = _lease(tmp_path, 'a', clock)
    b = _lease(tmp_path, 'b', clock)
    async with a.held():
        with pytest.raises(lease_mod.LeaseBusy):
            async with b.held():
                pass
    assert a.current_owner() is None


async def test_renewal_task_marks_lost_when_taken_over(tmp_path):
    clock = Clock()
    a = _lease(tmp_path, 'a', clock, renew_interval=0.01)
    b = _lease(tmp_path, 'b', clock)
    async with a.held():
        clock.t += 60
        assert b.try_acquire()
        for _ in range(50):
            if a.lost:
                break
            await asyncio.sleep(0.01)
        assert a.lost
    # The new owner keeps the lease
    assert b.current_owner() == 'b'
