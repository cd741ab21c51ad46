"""
Tests for plan resolution.
"""

import pytest

from billing.config import (
    resolve_plan,
    get_static_plans,
    format_plan_report,
    MAX_TOKEN_PLAN,
    PlanCode,
)


class TestStaticPlans:
    def test_credit_pack(self):
        plan = resolve_plan('credits_100')
        assert plan.credits == 100
        assert plan.name == '100 Credits'
        assert plan.grants_pro is False

    def test_pro_monthly_grants_window(self):
        plan = resolve_plan(PlanCode.PRO_MONTHLY.value)
        assert plan.credits == 2000
        assert plan.is_pro is True
        assert plan.pro_days == 30
        assert plan.grants_pro is True

    def test_catalog_lists_static_plans_only(self):
        codes = [p.code for p in get_static_plans()]
        assert codes == ['credits_100', 'credits_500', 'credits_1000', 'pro_monthly']


class TestTokenPlans:
    def test_tokens_500(self):
        plan = resolve_plan('tokens_500')
        assert plan.credits == 500
        assert plan.code == 'tokens_500'
        assert plan.name == '500 Tokens'

    def test_upper_bound_is_inclusive(self):
        assert resolve_plan(f'tokens_{MAX_TOKEN_PLAN}').credits == MAX_TOKEN_PLAN

    @pytest.mark.parametrize('plan_id', [
        'tokens_0',
        'tokens_999999999999',
        f'tokens_{MAX_TOKEN_PLAN + 1}',
        'tokens_-5',
        'tokens_1.5',
        'tokens_',
        'TOKENS_5',
        'tokens_5 ',
    ])
    def test_rejected(self, plan_id):
        assert resolve_plan(plan_id) is None


@pytest.mark.parametrize('plan_id', ['unknown_plan', '', None, 42])
def test_unknown_ids_rejected(plan_id):
    assert resolve_plan(plan_id) is None


def test_plan_report_mentions_every_plan():
    report = format_plan_report()
    for plan in get_static_plans():
        assert plan.code in report
    assert 'tokens_<N>' in report
