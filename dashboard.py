#!/usr/bin/env python3
"""
In-Market Audience Bidding Dashboard
====================================

Interactive dashboard for reviewing the bid modifiers written (or proposed, in
dry runs) by audience_bidding_core.py. Reads the audit CSVs from the log
directory, or generates demo data.

Usage:
  streamlit run dashboard.py
"""

import glob
import os
import random
from datetime import datetime, timedelta, timezone
from typing import Dict

import streamlit as st
import pandas as pd
import plotly.express as px
import plotly.graph_objects as go

from audience_bidding_core import AUDIT_FIELDNAMES

AUDIT_FILE_PATTERN = "audience_bid_audit_*.csv"


# ============================================================================
# DATA LOADING FUNCTIONS
# ============================================================================

def load_audit_trail(directory: str) -> pd.DataFrame:
    """Concatenate every audit CSV in a directory, oldest file first"""
    paths = sorted(glob.glob(os.path.join(directory, AUDIT_FILE_PATTERN)))
    frames = [
        pd.read_csv(path, dtype={'entity_id': str, 'audience_id': str, 'category': str})
        for path in paths
    ]
    frames = [frame for frame in frames if not frame.empty]
    if not frames:
        return pd.DataFrame(columns=AUDIT_FIELDNAMES)

    df = pd.concat(frames, ignore_index=True)
    return _normalize_types(df)


def _normalize_types(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    df['timestamp'] = pd.to_datetime(df['timestamp'], utc=True, errors='coerce')
    df['old_value'] = pd.to_numeric(df['old_value'], errors='coerce')
    df['new_value'] = pd.to_numeric(df['new_value'], errors='coerce')
    df['dry_run'] = df['dry_run'].astype(str).str.lower() == 'true'
    df['category'] = df['category'].fillna('')
    return df


def generate_sample_data(operations: int = 120, seed: int = 7) -> pd.DataFrame:
    """Generate sample audit entries for demonstration purposes"""
    rng = random.Random(seed)
    categories = [
        'Home & Garden/Gardening & Landscaping',
        'Home & Garden/Lawn Care',
        'Apparel & Accessories',
        'Autos & Vehicles/Motor Vehicles',
        'Travel/Hotels & Accommodations',
    ]
    now = datetime.now(timezone.utc)

    rows = []
    for i in range(operations):
        category = categories[i % len(categories)]
        level = 'CAMPAIGN' if i % 3 else 'AD_GROUP'
        entity_cpa = round(rng.uniform(5, 40), 2)
        audience_cpa = round(entity_cpa * rng.uniform(0.4, 2.2), 2)
        old_value = round(rng.uniform(0.7, 1.5), 4) if i % 4 else None
        rows.append({
            'timestamp': (now - timedelta(days=i % 14, minutes=i)).isoformat(),
            'action_type': 'BID_MODIFIER_UPDATE',
            'entity_type': f"{level}_AUDIENCE",
            'entity_id': str(1000 + i % 9),
            'audience_id': str(80100 + categories.index(category)),
            'category': category,
            'old_value': old_value,
            'new_value': round(entity_cpa / audience_cpa, 4),
            'reason': f"Entity CPA {entity_cpa:.2f} / audience CPA {audience_cpa:.2f}",
            'dry_run': i % 5 == 0,
        })

    return _normalize_types(pd.DataFrame(rows, columns=AUDIT_FIELDNAMES))


@st.cache_data(ttl=300)
def cached_audit_trail(directory: str) -> pd.DataFrame:
    return load_audit_trail(directory)


def summarize_modifiers(df: pd.DataFrame) -> Dict[str, float]:
    """Headline numbers for a set of audit entries"""
    modifiers = df['new_value'].dropna()
    total = len(modifiers)
    if total == 0:
        return {
            'operations': 0,
            'mean_modifier': 0.0,
            'raised_share': 0.0,
            'lowered_share': 0.0,
            'dry_run_operations': int(df['dry_run'].sum()) if 'dry_run' in df else 0,
        }

    return {
        'operations': total,
        'mean_modifier': float(modifiers.mean()),
        'raised_share': float((modifiers > 1).sum()) / total,
        'lowered_share': float((modifiers < 1).sum()) / total,
        'dry_run_operations': int(df['dry_run'].sum()),
    }


def modifiers_by_category(df: pd.DataFrame) -> pd.DataFrame:
    """Operation count and mean modifier per audience category, highest mean first"""
    if df.empty:
        return pd.DataFrame(columns=['category', 'operations', 'mean_modifier'])

    summary = df.groupby('category').agg(
        operations=('new_value', 'count'),
        mean_modifier=('new_value', 'mean'),
    ).reset_index()
    return summary.sort_values('mean_modifier', ascending=False, ignore_index=True)


# ============================================================================
# VISUALIZATION FUNCTIONS
# ============================================================================

def create_kpi_metrics(df: pd.DataFrame):
    """Display key performance indicators"""
    summary = summarize_modifiers(df)

    col1, col2, col3, col4 = st.columns(4)

    with col1:
        st.metric("Operations", f"{summary['operations']:,}")

    with col2:
        st.metric("Mean Modifier", f"{summary['mean_modifier']:.2f}x")

    with col3:
        st.metric("Raised", f"{summary['raised_share'] * 100:.1f}%")
        st.metric("Lowered", f"{summary['lowered_share'] * 100:.1f}%")

    with col4:
        st.metric("Dry Run", f"{summary['dry_run_operations']:,}")


def create_modifier_distribution(df: pd.DataFrame):
    """Histogram of the written modifiers"""
    fig = px.histogram(
        df,
        x='new_value',
        color='entity_type',
        nbins=40,
        title='Bid Modifier Distribution',
        labels={'new_value': 'Bid Modifier', 'entity_type': 'Level'},
    )
    fig.add_vline(x=1.0, line_dash="dash", line_color="gray", annotation_text="No change")
    st.plotly_chart(fig, use_container_width=True)


def create_category_comparison(df: pd.DataFrame):
    """Mean modifier per in-market category"""
    summary = modifiers_by_category(df).sort_values('mean_modifier', ascending=True)

    fig = go.Figure()
    fig.add_trace(go.Bar(
        y=summary['category'],
        x=summary['mean_modifier'],
        orientation='h',
        text=summary['operations'],
        marker=dict(color=['#51cf66' if m >= 1 else '#ff6b6b' for m in summary['mean_modifier']]),
    ))
    fig.update_layout(
        title="Mean Modifier by Audience Category",
        xaxis_title="Mean Bid Modifier",
        yaxis_title="Category",
        height=max(300, 40 * len(summary)),
    )
    st.plotly_chart(fig, use_container_width=True)


def create_operations_table(df: pd.DataFrame):
    display_df = df[[
        'timestamp', 'entity_type', 'entity_id', 'audience_id', 'category',
        'old_value', 'new_value', 'reason', 'dry_run'
    ]].sort_values('timestamp', ascending=False).copy()

    display_df.columns = [
        'Time', 'Level', 'Entity', 'Audience', 'Category',
        'Old Modifier', 'New Modifier', 'Reason', 'Dry Run'
    ]
    display_df['Old Modifier'] = display_df['Old Modifier'].apply(lambda x: '' if pd.isna(x) else f"{x:.4f}")
    display_df['New Modifier'] = display_df['New Modifier'].apply(lambda x: f"{x:.4f}")

    st.dataframe(display_df, use_container_width=True, hide_index=True)


# ============================================================================
# MAIN DASHBOARD
# ============================================================================

def main():
    """Main dashboard application"""
    st.set_page_config(
        page_title="In-Market Audience Bidding",
        page_icon="🎯",
        layout="wide",
        initial_sidebar_state="expanded",
    )

    st.title("🎯 In-Market Audience Bid Modifiers")
    st.markdown("Audit trail of modifiers computed from audience vs. entity cost per conversion")

    # Sidebar configuration
    st.sidebar.title("⚙️ Configuration")

    data_source = st.sidebar.radio(
        "Data Source",
        ["Sample Data (Demo)", "Audit Logs"]
    )

    if data_source == "Audit Logs":
        log_dir = st.sidebar.text_input("Audit Directory", value="./logs")
        with st.spinner("Loading audit trail..."):
            data = cached_audit_trail(log_dir)
        if data.empty:
            st.warning(f"No audit files matching {AUDIT_FILE_PATTERN} in {log_dir}")
            return
    else:
        data = generate_sample_data()

    include_dry_runs = st.sidebar.checkbox("Include dry runs", value=True)
    if not include_dry_runs:
        data = data[~data['dry_run']]

    levels = sorted(data['entity_type'].dropna().unique())
    selected_levels = st.sidebar.multiselect("Levels", levels, default=levels)
    data = data[data['entity_type'].isin(selected_levels)]

    st.sidebar.markdown("---")
    st.sidebar.caption(f"Last Updated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    if data.empty:
        st.info("No operations match the current filters")
        return

    st.header("📈 Summary")
    create_kpi_metrics(data)

    st.markdown("---")

    st.header("📊 Modifier Distribution")
    create_modifier_distribution(data)

    st.markdown("---")

    st.header("🛍️ Audience Categories")
    create_category_comparison(data)

    st.markdown("---")

    st.header("📋 Operations")
    create_operations_table(data)

    st.markdown("---")
    st.caption("In-Market Audience Bidding Dashboard | v1.0.0")


if __name__ == "__main__":
    main()
