# app.py

import logging

import streamlit as st

from dca_engine import RiskMode, PositionType, ValidationError, cleared_form, compute, parse_trade_inputs

logger = logging.getLogger(__name__)

FIELDS = [
    'available_amount', 'first_buy_price', 'last_buy_price', 'stop_loss_price',
    'number_of_positions', 'total_buys', 'risk_percentage', 'buy_percentages',
]

for name, value in cleared_form().items():
    st.session_state.setdefault(name, str(value))


def clear_form():
    form = cleared_form({'available_amount': st.session_state['available_amount']})
    for name, value in form.items():
        st.session_state[name] = str(value)
    st.session_state.pop('result', None)


st.title("DCA Investment Calculator")
st.button("Clear Form", on_click=clear_form)

with st.form("trade-parameters"):
    st.text_input("Available Amount", key='available_amount')
    st.text_input("First Buy Price", key='first_buy_price')
    st.text_input("Last Buy Price", key='last_buy_price',
                  placeholder="Optional: Leave empty to use only First Buy Price")
    st.text_input("Stop Loss Price", key='stop_loss_price')

    with st.expander("Optional Fields"):
        st.text_input("Number of Positions", key='number_of_positions')
        st.text_input("Total Buys", key='total_buys')
        st.text_input("Risk Percentage (%)", key='risk_percentage')
        st.text_input("Buy Percentages (comma-separated)", key='buy_percentages')

    submitted = st.form_submit_button("Calculate")

if submitted:
    params = parse_trade_inputs(
        position_type=PositionType.LONG,
        risk_mode=RiskMode.MANUAL,
        **{name: st.session_state[name] for name in FIELDS}
    )
    try:
        st.session_state['result'] = compute(params)
    except ValidationError as e:
        # The last good result stays on screen
        st.error(str(e))

result = st.session_state.get('result')
if result is not None:
    summary = result.summary()
    logger.debug("Showing %d limit orders, leverage %s", len(result.limit_orders), summary['leverage'])

    st.subheader("Limit Orders")
    st.dataframe(result.orders_frame(), hide_index=True)
    st.metric("Leverage", summary['leverage'])

    st.subheader("Info")
    col1, col2, col3 = st.columns(3)
    col1.metric("Investment Amount (per position)", f"${summary['investment_per_position']}")
    col2.metric("Risk Amount (per position)", f"${summary['risk_amount_per_position']}")
    col3.metric("Total Risk Amount (all positions)", f"${summary['total_risk_amount']}")
