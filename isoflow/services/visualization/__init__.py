"""Plotly figures and the Streamlit live viewer."""
