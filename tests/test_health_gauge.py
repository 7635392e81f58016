from brave.bpc.model.health import HealthGauge


class TestHealthGauge:

    async def test_healthy_until_threshold(self):
        gauge = HealthGauge(threshold=2)

        assert await gauge.record_failure() == 1
        assert await gauge.record_failure() == 2
        assert await gauge.is_healthy()

        await gauge.record_failure()
        assert not await gauge.is_healthy()

    async def test_decay_recovers(self):
        gauge = HealthGauge(failures=3, threshold=2)

        await gauge.decay()
        assert await gauge.is_healthy()

    async def test_decay_stops_at_zero(self):
        gauge = HealthGauge()

        await gauge.decay()

        assert await gauge.record_failure() == 1
