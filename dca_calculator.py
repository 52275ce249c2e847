import json
import logging
import os

import dash
from dash import dcc, html, Input, Output, State
import plotly.graph_objects as go
import dash_bootstrap_components as dbc

from dca_engine import (
    FORM_DEFAULTS,
    CalculationResult,
    PositionType,
    RiskMode,
    ValidationError,
    cleared_form,
    compute,
    parse_trade_inputs,
)

logger = logging.getLogger(__name__)

# Initialize the app
app = dash.Dash(__name__, external_stylesheets=[dbc.themes.BOOTSTRAP])
server = app.server

# Server settings
HOST = os.environ.get('DCA_CALCULATOR_HOST', '127.0.0.1')
PORT = int(os.environ.get('DCA_CALCULATOR_PORT', '8050'))
DEBUG = os.environ.get('DCA_CALCULATOR_DEBUG', '').lower() in ('1', 'true', 'yes')
LOG_LEVEL = os.environ.get('DCA_CALCULATOR_LOG_LEVEL', 'INFO').upper()

# Constants
POSITION_TYPE_OPTIONS = [
    {'label': 'Long', 'value': PositionType.LONG.value},
    {'label': 'Short', 'value': PositionType.SHORT.value},
]
RISK_MODE_OPTIONS = [
    {'label': 'Fixed risk percentage per position', 'value': RiskMode.MANUAL.value},
    {'label': 'Split risk evenly across positions', 'value': RiskMode.SPLIT.value},
]

# Form field name -> component id
FORM_FIELD_IDS = {
    'available_amount': 'available-amount',
    'first_buy_price': 'first-buy-price',
    'last_buy_price': 'last-buy-price',
    'stop_loss_price': 'stop-loss-price',
    'number_of_positions': 'number-of-positions',
    'total_buys': 'total-buys',
    'risk_percentage': 'risk-percentage',
    'buy_percentages': 'buy-percentages',
}


# Helper functions
def run_calculation(form, position_type, risk_mode):
    """Parse the form and run the engine.

    Returns (result_dict, None) on success or (None, message) when the
    inputs fail validation.
    """
    params = parse_trade_inputs(position_type=position_type, risk_mode=risk_mode, **form)
    try:
        result = compute(params)
    except ValidationError as e:
        return None, str(e)

    logger.debug(
        "Computed %d limit orders (%s, %s): leverage %.4f, risk per position %.2f",
        len(result.limit_orders), result.position_type.value, result.risk_mode.value,
        result.leverage, result.risk_amount_per_position,
    )
    return result.to_dict(), None


def build_results_cards(result):
    """Summary cards for a calculation result"""
    summary = result.summary()

    details = [
        html.P(f"Position Type: {summary['position_type']}"),
        html.P(f"Stop Loss Price: ${summary['stop_loss_price']}"),
    ]
    if 'average_entry_price' in summary:
        details.append(html.P(f"Average Entry Price: ${summary['average_entry_price']}"))
    if 'risk_percentage' in summary:
        details.append(html.P(f"Risk Percentage (per position): {summary['risk_percentage']}"))

    return [
        dbc.Card([
            dbc.CardHeader("Results", className="bg-success text-white"),
            dbc.CardBody([
                dbc.Row([
                    dbc.Col([
                        html.H5("Leverage", className="card-title"),
                        html.H4(summary['leverage'], id='leverage-value', className="card-text"),
                    ]),
                    dbc.Col([
                        html.H5("Total Risk (all positions)", className="card-title"),
                        html.H4(f"${summary['total_risk_amount']}", className="card-text"),
                    ]),
                ]),
                html.Hr(),
                dbc.Row([
                    dbc.Col([
                        html.P(f"Investment Amount (per position): ${summary['investment_per_position']}"),
                        html.P(f"Risk Amount (per position): ${summary['risk_amount_per_position']}"),
                        html.P(f"Number of Positions: {result.number_of_positions}"),
                    ]),
                    dbc.Col(details),
                ]),
            ])
        ], className="mb-3")
    ]


def build_orders_table(result):
    orders_df = result.orders_frame()
    return dbc.Table.from_dataframe(
        orders_df,
        striped=True,
        bordered=True,
        hover=True,
        responsive=True,
        size="sm"
    )


def build_ladder_figure(result):
    """Bar chart of capital per limit order, with stop-loss and average entry lines"""
    prices = [order.price for order in result.limit_orders]
    amounts = [order.amount_invested for order in result.limit_orders]

    fig = go.Figure()
    fig.add_trace(go.Bar(
        x=amounts,
        y=prices,
        orientation='h',
        name='Limit Orders',
        marker=dict(color='blue'),
        hovertemplate='<b>Limit Order</b><br>Price: $%{y:,.4f}<br>Amount: $%{x:,.2f}<extra></extra>'
    ))

    fig.add_hline(
        y=result.stop_loss_price,
        line=dict(color='red', dash='dash', width=2),
        annotation_text='Stop Loss',
        annotation_position='bottom right'
    )
    if result.average_entry_price is not None:
        fig.add_hline(
            y=result.average_entry_price,
            line=dict(color='orange', dash='dot', width=2),
            annotation_text='Average Entry',
            annotation_position='top right'
        )

    fig.update_layout(
        title=f"{result.position_type.value.capitalize()} Limit Order Ladder",
        xaxis_title="Amount to Invest ($)",
        yaxis_title="Price ($)",
        template="plotly_white",
        showlegend=False,
        xaxis=dict(tickformat="$,.0f")
    )
    return fig


def empty_results():
    return [
        dbc.Card([
            dbc.CardHeader("Results", className="bg-success text-white"),
            dbc.CardBody([
                html.P("Enter parameters and click Calculate to see results", className="text-center")
            ])
        ])
    ]


def _number_field(label, name, help_text=None, placeholder=None, **kwargs):
    children = [
        dbc.Label(label, html_for=FORM_FIELD_IDS[name]),
        dbc.Input(
            id=FORM_FIELD_IDS[name],
            value=FORM_DEFAULTS[name],
            type='number',
            placeholder=placeholder,
            **kwargs
        ),
    ]
    if help_text:
        children.append(dbc.FormText(help_text))
    return dbc.Row([dbc.Col(children, className="mb-3")])


# App layout
app.layout = dbc.Container([
    dbc.Row([
        dbc.Col(html.H1("DCA Investment Calculator", className="text-center my-4")),
        dbc.Col(
            dbc.Button("Clear Form", id='clear-btn', color="secondary", outline=True, className="mt-4"),
            width="auto"
        ),
    ]),
    dbc.Row([
        dbc.Col([
            dbc.Card([
                dbc.CardHeader("Trade Parameters", className="bg-primary text-white"),
                dbc.CardBody([
                    _number_field("Available Amount ($)", 'available_amount', min=0, step='any'),
                    _number_field("First Buy Price ($)", 'first_buy_price', min=0, step='any'),
                    _number_field(
                        "Last Buy Price ($)", 'last_buy_price',
                        help_text="Optional: leave empty to use only the First Buy Price",
                        min=0, step='any'
                    ),
                    _number_field("Stop Loss Price ($)", 'stop_loss_price', min=0, step='any'),

                    dbc.Row([
                        dbc.Col([
                            dbc.Label("Position Type", html_for="position-type"),
                            dbc.RadioItems(
                                id='position-type',
                                options=POSITION_TYPE_OPTIONS,
                                value=PositionType.LONG.value,
                                inline=True
                            ),
                        ], className="mb-3"),
                    ]),

                    dbc.Row([
                        dbc.Col([
                            dbc.Label("Risk Model", html_for="risk-mode"),
                            dcc.Dropdown(
                                id='risk-mode',
                                options=RISK_MODE_OPTIONS,
                                value=RiskMode.MANUAL.value,
                                clearable=False
                            ),
                            dbc.FormText("Split mode also reports the average entry price and sizes leverage from it"),
                        ], className="mb-3"),
                    ]),

                    dbc.Row([
                        dbc.Col([
                            dbc.Button("Calculate", id='calculate-btn', color="primary", className="w-100"),
                        ]),
                    ]),

                    html.Hr(),

                    dbc.Button(
                        "Show Optional Fields",
                        id='toggle-optional-btn',
                        color="link",
                        className="p-0 mb-2"
                    ),
                    dbc.Collapse([
                        _number_field("Number of Positions", 'number_of_positions', min=1, step=1),
                        _number_field("Total Buys", 'total_buys', min=1, step=1),
                        _number_field(
                            "Risk Percentage (%)", 'risk_percentage',
                            help_text="Used by the fixed risk model only",
                            min=0, max=100, step='any'
                        ),
                        dbc.Row([
                            dbc.Col([
                                dbc.Label("Buy Percentages (comma-separated)", html_for="buy-percentages"),
                                dbc.Input(
                                    id='buy-percentages',
                                    value=FORM_DEFAULTS['buy_percentages'],
                                    type='text'
                                ),
                                dbc.FormText("One entry per buy, adding up to 100"),
                            ], className="mb-3"),
                        ]),
                    ], id='optional-fields', is_open=False),
                ])
            ]),

            dbc.Card([
                dbc.CardHeader("Information", className="bg-info text-white"),
                dbc.CardBody([
                    html.P("Limit orders are spaced evenly from the first to the last buy price."),
                    html.P("Leverage is sized so that hitting the stop loss loses the risk amount of one position."),
                    html.P("Total risk assumes every position is stopped out.", className="mb-0"),
                ])
            ], className="mt-3"),
        ], width=4),

        dbc.Col([
            dcc.Loading(
                id="loading-main",
                type="default",
                children=[
                    html.Div(id='results-container'),
                ]
            ),

            dbc.Card([
                dbc.CardHeader("Limit Orders", className="bg-secondary text-white"),
                dbc.CardBody([
                    html.Div(id='orders-table'),
                ])
            ], className="mt-3"),

            dbc.Card([
                dbc.CardHeader("Order Ladder", className="bg-primary text-white"),
                dbc.CardBody([
                    dcc.Graph(id='ladder-chart', config={'displayModeBar': False}),
                ])
            ], className="mt-3"),
        ], width=8)
    ]),

    # Hidden div to store the serialized result
    html.Div(id='raw-data', style={'display': 'none'}),

    # Error modal
    dbc.Modal([
        dbc.ModalHeader("Error"),
        dbc.ModalBody(id='error-message'),
        dbc.ModalFooter(
            dbc.Button("Close", id="close-error-modal", className="ml-auto")
        ),
    ], id="error-modal"),
], fluid=True)


# Callbacks
@app.callback(
    [Output('raw-data', 'children'),
     Output('error-modal', 'is_open'),
     Output('error-message', 'children')],
    [Input('calculate-btn', 'n_clicks'),
     Input('close-error-modal', 'n_clicks'),
     Input('clear-btn', 'n_clicks'),
     Input('position-type', 'value')],
    [State(component_id, 'value') for component_id in FORM_FIELD_IDS.values()]
    + [State('risk-mode', 'value')],
    prevent_initial_call=True
)
def handle_modal_and_data(calc_clicks, close_clicks, clear_clicks, position_type, *form_values):
    """Run calculations, close the error modal, and clear results"""
    ctx = dash.callback_context

    if not ctx.triggered:
        return dash.no_update, dash.no_update, dash.no_update

    trigger_id = ctx.triggered[0]['prop_id'].split('.')[0]
    return resolve_trigger(trigger_id, position_type, form_values)


def resolve_trigger(trigger_id, position_type, form_values):
    """Decide what the data callback does for the component that fired it"""
    if trigger_id == 'close-error-modal':
        return dash.no_update, False, dash.no_update

    # A new position type or a cleared form invalidates the shown result
    if trigger_id in ('clear-btn', 'position-type'):
        return None, dash.no_update, dash.no_update

    if trigger_id == 'calculate-btn':
        *field_values, risk_mode = form_values
        form = dict(zip(FORM_FIELD_IDS, field_values))
        result, error = run_calculation(form, position_type, risk_mode)
        if error:
            # Leave the previous result on screen
            return dash.no_update, True, error
        return json.dumps(result), False, ""

    return dash.no_update, dash.no_update, dash.no_update


@app.callback(
    [Output(component_id, 'value') for component_id in FORM_FIELD_IDS.values()],
    Input('clear-btn', 'n_clicks'),
    State('available-amount', 'value'),
    prevent_initial_call=True
)
def reset_form(clear_clicks, available_amount):
    """Reset inputs to their defaults, keeping the available amount"""
    form = cleared_form({'available_amount': available_amount})
    return [form[name] for name in FORM_FIELD_IDS]


@app.callback(
    [Output('optional-fields', 'is_open'),
     Output('toggle-optional-btn', 'children')],
    Input('toggle-optional-btn', 'n_clicks'),
    State('optional-fields', 'is_open'),
    prevent_initial_call=True
)
def toggle_optional_fields(n_clicks, is_open):
    is_open = not is_open
    return is_open, "Hide Optional Fields" if is_open else "Show Optional Fields"


@app.callback(
    [Output('results-container', 'children'),
     Output('ladder-chart', 'figure'),
     Output('orders-table', 'children')],
    Input('raw-data', 'children')
)
def update_output(json_data):
    """Render the summary, the limit order table and the ladder chart"""
    if not json_data:
        return empty_results(), go.Figure(), None

    try:
        result = CalculationResult.from_dict(json.loads(json_data))
        return build_results_cards(result), build_ladder_figure(result), build_orders_table(result)

    except Exception as e:
        logger.exception("Failed to render calculation result")
        error_card = dbc.Card([
            dbc.CardHeader("Error", className="bg-danger text-white"),
            dbc.CardBody([
                html.P(f"Error displaying results: {str(e)}", className="text-danger")
            ])
        ])
        return [error_card], go.Figure(), None


# Run the app
if __name__ == '__main__':
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting DCA calculator on %s:%d", HOST, PORT)
    app.run(host=HOST, port=PORT, debug=DEBUG)
