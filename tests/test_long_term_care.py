"""
Tests for the long-term-care event model.
"""
import numpy as np
import pytest

from viability.simulation.long_term_care import LongTermCareModel, lognormal_shape
from viability.simulation.parameters import LTCInsurance


@pytest.fixture
def insured_params(retiree_params):
    return retiree_params.with_changes(ltc_insurance=LTCInsurance(daily_benefit=200, benefit_period_years=2,
                                                                   elimination_days=90, annual_premium=3000))


class TestIncidence:
    """Tests for household hazards and event sampling."""

    def test_hazards_cover_household_life(self, couple_params, tables):
        model = LongTermCareModel(couple_params, tables)
        ages, hazards = model.household_hazards(user_death_age=85, spouse_death_age=95)
        assert ages[0] == 60
        assert ages[-1] == 94
        assert np.all((hazards >= 0) & (hazards < 1))

    def test_couple_hazard_exceeds_single(self, couple_params, tables):
        """Two living members raise the chance that someone starts care."""
        model = LongTermCareModel(couple_params, tables)
        ages, both = model.household_hazards(user_death_age=95, spouse_death_age=95)
        _, alone = model.household_hazards(user_death_age=95, spouse_death_age=None)
        assert np.all(both >= alone)
        assert both[ages == 80][0] > alone[ages == 80][0]

    def test_no_event_when_draw_beyond_lifetime(self, retiree_params, tables):
        model = LongTermCareModel(retiree_params, tables)
        assert model.sample_event(np.array([1 - 1e-12, 0.5, 0.5, 0.5]), 88) is None

    def test_event_sampled_within_life(self, retiree_params, tables):
        model = LongTermCareModel(retiree_params, tables)
        event = model.sample_event(np.array([0.05, 0.5, 0.5, 0.5]), 88)
        assert event is not None
        assert 75 <= event.onset_age < 88
        assert event.person == "user"
        assert event.end_age <= 88

    def test_duration_capped_by_remaining_life(self, retiree_params, tables):
        model = LongTermCareModel(retiree_params, tables)
        # Early onset, long duration draw, death two years out
        event = model.sample_event(np.array([0.001, 0.5, 1 - 1e-9, 0.5]), 77)
        assert event.duration_years <= 77 - event.onset_age

    def test_duration_within_bounds(self, retiree_params, tables):
        model = LongTermCareModel(retiree_params, tables)
        low, high = tables.ltc.duration_bounds
        for u in (1e-9, 0.5, 1 - 1e-9):
            event = model.sample_event(np.array([0.01, 0.5, u, 0.5]), 110)
            assert low <= event.duration_years <= high

    def test_lifetime_probability(self, retiree_params, tables):
        model = LongTermCareModel(retiree_params, tables)
        short = model.lifetime_probability(80)
        long = model.lifetime_probability(100)
        assert 0 < short < long < 1

    def test_cost_follows_state_and_care_type(self, retiree_params, tables):
        model_ca = LongTermCareModel(retiree_params.with_changes(state="CA"), tables)
        model_tx = LongTermCareModel(retiree_params.with_changes(state="TX"), tables)
        u = np.array([0.05, 0.5, 0.5, 0.99])  # memory care
        ca = model_ca.sample_event(u, 95)
        tx = model_tx.sample_event(u, 95)
        assert ca.care_type == "memory_care"
        assert ca.annual_gross_cost / tx.annual_gross_cost == pytest.approx(1.40 / 0.80)

    def test_lognormal_shape_moments(self):
        sigma, scale = lognormal_shape(2.5, 1.8)
        mean = scale * np.exp(sigma ** 2 / 2)
        assert mean == pytest.approx(2.5)


class TestInsurance:
    """Tests for netting costs against a policy."""

    def test_uninsured_net_equals_gross(self, retiree_params, tables):
        event = LongTermCareModel(retiree_params, tables).build_event(80, 2.5, "nursing_home", 100000)
        assert event.net_costs == event.gross_costs
        assert event.total_insurance_benefit == 0
        assert len(event.gross_costs) == 3
        assert event.gross_costs[2] == pytest.approx(100000 * 1.04 ** 2 * 0.5)

    def test_net_never_exceeds_gross(self, insured_params, tables):
        event = LongTermCareModel(insured_params, tables).build_event(80, 4.0, "nursing_home", 100000)
        for gross, benefit, net in zip(event.gross_costs, event.insurance_benefits, event.net_costs):
            assert 0 <= benefit <= gross
            assert net == pytest.approx(gross - benefit)

    def test_elimination_period(self, insured_params, tables):
        """The first 90 days of the claim are paid out of pocket."""
        event = LongTermCareModel(insured_params, tables).build_event(80, 1.0, "home_care", 36500)
        # Daily cost 100 is below the 200 daily benefit, so covered days pay in full
        assert event.insurance_benefits[0] == pytest.approx(100 * (365 - 90))

    def test_short_claim_inside_elimination(self, insured_params, tables):
        event = LongTermCareModel(insured_params, tables).build_event(80, 0.2, "home_care", 36500)
        assert event.total_insurance_benefit == 0

    def test_benefit_period_limit(self, insured_params, tables):
        """A two-year policy stops paying two years after the elimination period."""
        event = LongTermCareModel(insured_params, tables).build_event(80, 4.0, "nursing_home", 200000)
        benefits = event.insurance_benefits
        assert benefits[0] == pytest.approx(200 * 275)
        assert benefits[1] == pytest.approx(200 * 365)
        assert benefits[2] == pytest.approx(200 * 90)
        assert benefits[3] == 0

    def test_daily_benefit_caps_payment(self, insured_params, tables):
        event = LongTermCareModel(insured_params, tables).build_event(80, 2.0, "nursing_home", 365000)
        assert event.insurance_benefits[1] == pytest.approx(200 * 365)
        assert event.net_costs[1] > 0

    def test_inflation_rider_grows_benefit(self, retiree_params, tables):
        plain = LTCInsurance(daily_benefit=200, benefit_period_years=5)
        rider = LTCInsurance(daily_benefit=200, benefit_period_years=5, inflation_rider=True, rider_rate=0.03)
        model = LongTermCareModel(retiree_params, tables)
        base = model.build_event(85, 2.0, "nursing_home", 365000, insurance=plain)
        grown = model.build_event(85, 2.0, "nursing_home", 365000, insurance=rider)
        assert grown.insurance_benefits[1] == pytest.approx(base.insurance_benefits[1] * 1.03 ** 11)

    def test_price_without_policy(self, insured_params, tables):
        model = LongTermCareModel(insured_params, tables)
        event = model.build_event(80, 2.0, "nursing_home", 100000, use_policy=False)
        assert event.total_insurance_benefit == 0


class TestPremiums:
    """Tests for premium payments."""

    def test_no_policy_no_premium(self, retiree_params, tables):
        assert LongTermCareModel(retiree_params, tables).premium(80, None) == 0

    def test_premium_waived_during_claim(self, insured_params, tables):
        model = LongTermCareModel(insured_params, tables)
        event = model.build_event(80, 2.0, "nursing_home", 100000)
        assert model.premium(79, event) == 3000
        assert model.premium(80, event) == 0
        assert model.premium(82, event) == 3000

    def test_premium_during_claim_when_required(self, retiree_params, tables):
        params = retiree_params.with_changes(ltc_insurance=LTCInsurance(premiums_during_claim=True))
        model = LongTermCareModel(params, tables)
        event = model.build_event(80, 2.0, "nursing_home", 100000)
        assert model.premium(80, event) == params.ltc_insurance.annual_premium


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
