import json

import altair as alt
import pandas as pd
import streamlit as st
from pydantic import ValidationError

from koc_pnl.config import CostStructure, Fee, OtherCost, get_settings
from koc_pnl.errors import MalformedFileError, PnlError
from koc_pnl.ingestion import check_file_name
from koc_pnl.logger import setup_logger
from koc_pnl.parsing import clean_text, is_blank
from koc_pnl.pipeline import ReconciliationSession, SourceCache, SourceFile
from koc_pnl.projections import (
    DEFAULT_PAGE_SIZE, SORT_KEYS, advisor_context, cost_breakdown, creator_orders, creator_video_breakdown,
    creators_for_campaign, dashboard_metrics, filter_entities, filter_videos_by_roi, financial_context_text,
    inventory_value, page_numbers, paginate, roi_distribution, sort_entities, summary_stats, to_records, with_bcg,
)

# ================= 1. 页面基础配置 =================
st.set_page_config(
    page_title="TikTok KOC P&L – Lợi nhuận thực theo KOC",
    page_icon="💰",
    layout="wide",
    initial_sidebar_state="expanded"
)

st.markdown("""
    <style>
    .main {background-color: #f8f9fa;}
    div.stButton > button:first-child {
        background-color: #ff0050; color: white; border-radius: 8px;
        padding: 12px 24px; font-weight: 600; border: none; width: 100%; font-size: 18px;
    }
    div.stButton > button:first-child:hover {background-color: #d60043; color: white;}
    [data-testid="stMetricValue"] {font-size: 24px; font-weight: bold; color: #1e1e1e;}

    .kpi-card {
        background-color: white; padding: 18px; border-radius: 10px;
        box-shadow: 0 2px 5px rgba(0,0,0,0.05); margin-bottom: 16px; border: 1px solid #e0e0e0;
    }
    .kpi-title {font-size: 16px; color: #666; margin-bottom: 6px;}
    .note {color:#666; font-size: 12px;}
    .warn {color:#b04a00; font-size: 12px;}
    .ok {color:#117a37; font-size: 12px;}
    </style>
""", unsafe_allow_html=True)

# ================= 2. 显示标签 =================
HEALTH_LABELS = {'HEALTHY': '🟢 Khỏe', 'NEUTRAL': '🟡 Trung tính', 'BLEEDING': '🔴 Chảy máu'}
ACTION_LABELS = {
    'STOCK_OUT': '📦 Hết hàng', 'INVENTORY_ALERT': '⚠️ Sắp hết hàng', 'KILL': '⛔ Dừng',
    'SCALE': '🚀 Tăng ngân sách', 'MAINTAIN': '✅ Duy trì', 'OPTIMIZE': '🛠️ Tối ưu',
}
SORT_LABELS = {
    'net_profit_desc': 'Lợi nhuận ròng (cao → thấp)',
    'net_profit_asc': 'Lợi nhuận ròng (thấp → cao)',
    'nmv_desc': 'NMV (cao → thấp)',
    'return_cancel_pct_asc': 'Tỷ lệ hoàn/hủy (thấp → cao)',
    'commission_desc': 'Hoa hồng (cao → thấp)',
    'cogs_desc': 'Giá vốn (cao → thấp)',
    'ads_cost_desc': 'Chi phí Ads (cao → thấp)',
}
BCG_LABELS = {
    'STAR': '⭐ Ngôi sao', 'COW': '🐮 Bò sữa', 'QUESTION': '❓ Dấu hỏi', 'DOG': '🐕 Chó mực',
}
ROI_BUCKET_LABELS = {
    'poor': 'ROI < 1 (Kém)', 'average': '1 ≤ ROI < 2 (TB)', 'good': '2 ≤ ROI < 4 (Tốt)', 'excellent': 'ROI ≥ 4 (Rất tốt)',
}
FEE_TYPE_LABELS = {'fixed': 'Cố định / đơn thành công (đ)', 'percent': '% NMV'}

ENTITY_DISPLAY = {
    'name': 'Tên', 'ads_cost': 'Chi phí Ads', 'order_gmv': 'GMV đơn', 'nmv': 'NMV', 'commission': 'Hoa hồng',
    'cogs': 'Giá vốn', 'total_fees': 'Phí', 'net_profit': 'Lợi nhuận ròng', 'total_orders': 'Tổng đơn',
    'failed_orders': 'Đơn hủy/hoàn', 'return_cancel_pct': '% Hoàn/Hủy', 'real_roas': 'ROAS thực',
    'break_even_roas': 'ROAS hòa vốn', 'days_on_hand_display': 'Ngày tồn kho', 'health': 'Sức khỏe', 'action': 'Hành động',
}


# ================= 3. 基础工具函数 =================
@st.cache_resource
def init_logging():
    return setup_logger()


def get_session():
    if 'session' not in st.session_state:
        settings = get_settings()
        cache = SourceCache(settings.cache_dir, settings.cache_row_limit, settings.cache_max_bytes)
        session = ReconciliationSession(settings, cache)
        # last ads upload, shown until new files are reconciled
        session.restore()
        st.session_state['session'] = session
    return st.session_state['session']


def fmt_vnd(x):
    return f"{x:,.0f} đ"


def entity_table(frame, extra=None):
    cols = list(ENTITY_DISPLAY.keys()) + (extra or [])
    out = frame[cols].copy()
    out['health'] = out['health'].map(HEALTH_LABELS)
    out['action'] = out['action'].map(ACTION_LABELS)
    # break-even is unbounded when the margin is not positive
    out['break_even_roas'] = out['break_even_roas'].map(lambda v: '∞' if v == float('inf') else f"{v:.2f}")
    return out.rename(columns=ENTITY_DISPLAY)


def to_source(uploaded):
    if uploaded is None:
        return None
    return SourceFile(uploaded.name, uploaded.getvalue())


def build_cost_structure(platform_pct, op_type, op_value, other_df):
    others = []
    for row in other_df.to_dict('records'):
        name = clean_text(row.get('name'))
        if not name:
            continue
        fee_type = 'fixed' if is_blank(row.get('type')) else row['type']
        value = 0.0 if is_blank(row.get('value')) else float(row['value'])
        others.append(OtherCost(name=name, type=fee_type, value=value))
    return CostStructure(
        platform_fee_percent=platform_pct,
        operating_fee=Fee(type=op_type, value=op_value),
        other_costs=others,
    )


def paged(frame, key):
    per_page = st.selectbox("Số dòng / trang", [10, DEFAULT_PAGE_SIZE, 50, 100], index=1, key=f"{key}_per_page")
    total_pages = max(1, -(-len(frame) // per_page))
    page_no = st.number_input("Trang", min_value=1, max_value=total_pages, value=1, step=1, key=f"{key}_page")
    page = paginate(frame, page_no, per_page)
    nav = " ".join(f"**{p}**" if p == page.page else str(p) for p in page_numbers(page.page, page.total_pages))
    st.caption(f"Hiển thị {page.start_item}–{page.end_item} / {page.total_items} ｜ Trang: {nav}")
    return page.rows


# ================= 4. 各标签页 =================
def render_overview(gen):
    result = gen.result
    metrics = dashboard_metrics(result.creators, gen.ad_summary)
    summary = summary_stats(result.creators)
    inv = inventory_value(gen.inventory, result.creators)

    c1, c2 = st.columns(2)
    with c1:
        st.markdown(f"""
        <div class="kpi-card">
          <div class="kpi-title">💰 Lợi nhuận thực</div>
          <b>NMV</b>: {fmt_vnd(metrics['nmv'])} ｜ <b>Lợi nhuận ròng</b>: {fmt_vnd(metrics['net_profit'])}<br>
          <b>Chi phí Ads</b>: {fmt_vnd(metrics['ads_cost'])} ｜ <b>Giá vốn</b>: {fmt_vnd(metrics['cogs'])}<br>
          <b>Tỷ lệ hoàn/hủy</b>: {metrics['return_rate']:.1f}%
        </div>
        """, unsafe_allow_html=True)
    with c2:
        st.markdown(f"""
        <div class="kpi-card">
          <div class="kpi-title">🤝 KOC & Tồn kho</div>
          <b>Tổng KOC</b>: {summary['total_koc']} ｜ <b>KOC có đơn</b>: {summary['active_koc']}<br>
          <b>GMV đơn hàng</b>: {fmt_vnd(summary['total_revenue'])}<br>
          <b>Giá trị tồn kho</b>: {fmt_vnd(inv['total_value'])}
          <div class="note">Chu kỳ bán hàng dùng cho số ngày tồn kho: {result.period_days} ngày</div>
        </div>
        """, unsafe_allow_html=True)

    k1, k2, k3, k4 = st.columns(4)
    k1.metric("GMV Ads", fmt_vnd(gen.ad_summary['total_gmv']))
    k2.metric("ROI Ads", f"{gen.ad_summary['avg_roi']:.2f}")
    k3.metric("Số video", gen.ad_summary['total_videos'])
    k4.metric("Đơn tìm được giá vốn", f"{result.cogs_found_count}/{result.total_orders}")

    st.subheader("Cơ cấu chi phí")
    costs = cost_breakdown(result.creators, gen.ad_summary)
    cost_df = pd.DataFrame({
        'Hạng mục': ['Chi phí Ads', 'Giá vốn', 'Hoa hồng'],
        'Giá trị': [costs['ads'], costs['cogs'], costs['commission']],
    })
    cost_df['Tỷ trọng'] = cost_df['Giá trị'] / costs['total']
    pie = alt.Chart(cost_df).mark_arc(innerRadius=50).encode(
        theta=alt.Theta('Giá trị:Q'),
        color=alt.Color('Hạng mục:N'),
        tooltip=[alt.Tooltip('Hạng mục:N'), alt.Tooltip('Giá trị:Q', format=',.0f'), alt.Tooltip('Tỷ trọng:Q', format='.1%')]
    ).properties(height=320)
    st.altair_chart(pie, use_container_width=True)


def render_creator_pnl(gen):
    result = gen.result
    st.markdown("## 🤝 P&L theo KOC")

    f1, f2, f3, f4 = st.columns(4)
    sort_key = f1.selectbox("Sắp xếp", list(SORT_KEYS.keys()), format_func=SORT_LABELS.get, key="koc_sort")
    query = f2.text_input("Tìm KOC", key="koc_query")
    health = f3.selectbox("Sức khỏe", [None] + list(HEALTH_LABELS), format_func=lambda v: HEALTH_LABELS.get(v, 'Tất cả'), key="koc_health")
    action = f4.selectbox("Hành động", [None] + list(ACTION_LABELS), format_func=lambda v: ACTION_LABELS.get(v, 'Tất cả'), key="koc_action")

    view = sort_entities(filter_entities(result.creators, query, health, action), sort_key)
    rows = paged(view, "koc")
    st.dataframe(
        entity_table(rows, ['latest_video_link']).rename(columns={'latest_video_link': 'Video top'}),
        use_container_width=True, hide_index=True,
        column_config={'Video top': st.column_config.LinkColumn('Video top')},
    )

    st.divider()
    st.markdown("### 🧭 Ma trận BCG (GMV × Lợi nhuận)")
    bcg = with_bcg(result.creators[result.creators['has_orders']])
    if bcg.empty:
        st.info("Chưa có KOC nào có đơn hàng.")
    else:
        bcg['Nhóm'] = bcg['bcg'].map(BCG_LABELS)
        bcg['bubble'] = bcg['nmv'].clip(lower=0)
        bubble = alt.Chart(bcg).mark_circle().encode(
            x=alt.X('order_gmv:Q', title='GMV đơn hàng (đ)'),
            y=alt.Y('net_profit:Q', title='Lợi nhuận ròng (đ)'),
            size=alt.Size('bubble:Q', title='NMV'),
            color=alt.Color('Nhóm:N', title='Nhóm BCG'),
            tooltip=[
                alt.Tooltip('name:N', title='KOC'),
                alt.Tooltip('Nhóm:N'),
                alt.Tooltip('order_gmv:Q', format=',.0f'),
                alt.Tooltip('net_profit:Q', format=',.0f'),
            ]
        ).properties(height=420).interactive()
        vline = alt.Chart(pd.DataFrame({'x': [bcg['order_gmv'].mean()]})).mark_rule().encode(x='x:Q')
        hline = alt.Chart(pd.DataFrame({'y': [bcg['net_profit'].mean()]})).mark_rule().encode(y='y:Q')
        st.altair_chart(bubble + vline + hline, use_container_width=True)

    left, right = st.columns(2)
    with left:
        st.markdown("#### 🔎 KOC chạy Ads nhưng không khớp đơn")
        if result.unmapped_creators.empty:
            st.markdown('<div class="ok">Không có KOC nào bị bỏ sót.</div>', unsafe_allow_html=True)
        else:
            st.dataframe(
                result.unmapped_creators[['name', 'cost', 'gross_revenue', 'video_count']].rename(columns={
                    'name': 'KOC', 'cost': 'Chi phí Ads', 'gross_revenue': 'GMV Ads', 'video_count': 'Số video',
                }),
                use_container_width=True, hide_index=True,
            )
        if not result.unmatched_order_creators.empty:
            with st.expander(f"KOC có đơn nhưng không có Ads ({len(result.unmatched_order_creators)})"):
                st.dataframe(result.unmatched_order_creators, use_container_width=True, hide_index=True)
    with right:
        st.markdown("#### 🧾 SKU không tìm thấy giá vốn")
        if result.not_found_skus:
            st.markdown(f'<div class="warn">{len(result.not_found_skus)} SKU chưa có trong file tồn kho.</div>', unsafe_allow_html=True)
            st.dataframe(pd.DataFrame({'Seller SKU': result.not_found_skus}), use_container_width=True, hide_index=True)
        else:
            st.markdown('<div class="ok">Tất cả đơn thành công đều tìm được giá vốn.</div>', unsafe_allow_html=True)


def render_product_pnl(gen):
    result = gen.result
    st.markdown("## 📦 P&L theo sản phẩm")
    sort_key = st.selectbox("Sắp xếp", list(SORT_KEYS.keys()), format_func=SORT_LABELS.get, key="product_sort")
    view = sort_entities(result.products, sort_key)
    rows = paged(view, "product")
    st.dataframe(
        entity_table(rows, ['product_id', 'seller_sku']).rename(columns={'product_id': 'ID sản phẩm', 'seller_sku': 'SKU'}),
        use_container_width=True, hide_index=True,
    )
    if not result.unmapped_products.empty:
        with st.expander(f"Sản phẩm chạy Ads nhưng không khớp đơn ({len(result.unmapped_products)})"):
            st.dataframe(result.unmapped_products[['key', 'name', 'cost', 'gross_revenue']], use_container_width=True, hide_index=True)


def render_creator_drilldown(gen):
    result = gen.result
    st.markdown("## 🔍 Chi tiết KOC")
    with_orders = result.creators[result.creators['has_orders']]
    if with_orders.empty:
        st.info("Chưa có dữ liệu đơn hàng.")
        return
    options = dict(zip(with_orders['key'], with_orders['name']))
    key = st.selectbox("Chọn KOC", list(options), format_func=options.get, key="drill_koc")
    koc = with_orders[with_orders['key'] == key].iloc[0]

    c1, c2, c3 = st.columns(3)
    c1.metric("Tổng đơn", int(koc['total_orders']))
    c2.metric("NMV", fmt_vnd(koc['nmv']))
    c3.metric("Lợi nhuận ròng", fmt_vnd(koc['net_profit']))

    st.markdown("#### 🎬 P&L theo video")
    videos = creator_video_breakdown(result, gen.ads, key)
    st.dataframe(videos.rename(columns={
        'video_id': 'ID video', 'video_title': 'Tiêu đề', 'product_name': 'Sản phẩm', 'nmv': 'NMV', 'cogs': 'Giá vốn',
        'commission': 'Hoa hồng', 'return_count': 'Đơn hoàn', 'ads_cost': 'Chi phí Ads', 'profit': 'Lợi nhuận',
        'roi': 'ROI', 'cir': 'CIR (%)',
    }), use_container_width=True, hide_index=True)

    st.markdown("#### 🧾 Đơn hàng")
    st.dataframe(creator_orders(result, key), use_container_width=True, hide_index=True)


def render_ads(gen):
    st.markdown("## 📺 Báo cáo quảng cáo")
    campaigns = gen.campaigns
    st.dataframe(campaigns.rename(columns={
        'campaign_name': 'Chiến dịch', 'gross_revenue': 'GMV', 'cost': 'Chi phí', 'avg_roi': 'ROI',
        'video_count': 'Số video', 'creator_count': 'Số KOC', 'effective_video_count': 'Video hiệu quả',
        'top_creator': 'KOC top', 'top_video_title': 'Video top',
    }), use_container_width=True, hide_index=True)

    left, right = st.columns(2)
    with left:
        st.markdown("#### Phân bố ROI video")
        dist = roi_distribution(gen.ads)
        dist_df = pd.DataFrame({'Nhóm ROI': [ROI_BUCKET_LABELS[b] for b in dist], 'Số video': list(dist.values())})
        bar = alt.Chart(dist_df).mark_bar().encode(
            x=alt.X('Số video:Q'),
            y=alt.Y('Nhóm ROI:N', sort=None),
            tooltip=['Nhóm ROI:N', 'Số video:Q']
        ).properties(height=220)
        st.altair_chart(bar, use_container_width=True)
        bucket = st.selectbox("Lọc video theo ROI", list(ROI_BUCKET_LABELS), format_func=ROI_BUCKET_LABELS.get, key="roi_bucket")
        st.dataframe(
            filter_videos_by_roi(gen.ads, bucket)[['video_id', 'video_title', 'creator', 'cost', 'gross_revenue', 'roi', 'ctr']],
            use_container_width=True, hide_index=True,
        )
    with right:
        if campaigns.empty:
            return
        st.markdown("#### KOC theo chiến dịch")
        campaign = st.selectbox("Chiến dịch", campaigns['campaign_name'].tolist(), key="ads_campaign")
        st.dataframe(
            creators_for_campaign(gen.ads, campaign)[['name', 'cost', 'gross_revenue', 'video_count', 'avg_roi', 'avg_ctr', 'avg_cvr']],
            use_container_width=True, hide_index=True,
        )


def render_ai_context(gen):
    st.markdown("## 🧠 Ngữ cảnh cho AI cố vấn")
    st.caption("Dữ liệu tổng hợp được đóng gói để gửi kèm prompt cho mô hình ngôn ngữ.")
    context = advisor_context(gen.result, gen.ad_summary)
    st.code(json.dumps(context, ensure_ascii=False, indent=2, default=str), language='json')
    st.markdown("#### Khối ngữ cảnh tài chính")
    st.code(financial_context_text(gen.result, gen.inventory) or "(trống)", language='markdown')
    st.download_button(
        "⬇️ Tải P&L KOC (JSON)",
        data=json.dumps(to_records(gen.result.creators), ensure_ascii=False, default=str),
        file_name="koc_pnl.json",
        mime="application/json",
    )


# ================= 5. 主程序 =================
def main():
    init_logging()
    settings = get_settings()
    session = get_session()
    st.title("🚀 TikTok KOC P&L – Đối soát lợi nhuận thực")

    with st.sidebar:
        st.header("📂 Dữ liệu nguồn")
        st.info(
            f"💡 File Đơn hàng phải chứa '{settings.orders_file_marker}', "
            f"file Tồn kho phải chứa '{settings.inventory_file_marker}' trong tên."
        )
        ads_up = st.file_uploader("1️⃣ File Quảng cáo (bắt buộc)", type=['xlsx', 'xls', 'csv'], key="ads_file")
        orders_up = st.file_uploader("2️⃣ File Đơn hàng", type=['xlsx', 'xls', 'csv'], key="orders_file")
        inventory_up = st.file_uploader("3️⃣ File Tồn kho", type=['xlsx', 'xls', 'csv'], key="inventory_file")

        name_ok = True
        for up, kind in [(ads_up, 'ads'), (orders_up, 'orders'), (inventory_up, 'inventory')]:
            if up is None:
                continue
            try:
                check_file_name(up.name, kind, settings)
            except MalformedFileError as e:
                st.error(f"❌ {e}")
                name_ok = False


        st.divider()
        st.subheader("⚙️ Cấu trúc chi phí")
        platform_pct = st.number_input("Phí sàn (% NMV)", min_value=0.0, value=settings.platform_fee_percent, step=0.5)
        op_type = st.selectbox(
            "Loại phí vận hành", ['fixed', 'percent'], format_func=FEE_TYPE_LABELS.get,
            index=['fixed', 'percent'].index(settings.operating_fee_type),
        )
        op_value = st.number_input("Giá trị phí vận hành", min_value=0.0, value=settings.operating_fee_value, step=1000.0)
        st.caption("Chi phí khác")
        other_df = st.data_editor(
            pd.DataFrame({'name': pd.Series(dtype=str), 'type': pd.Series(dtype=str), 'value': pd.Series(dtype=float)}),
            num_rows="dynamic",
            column_config={
                'name': st.column_config.TextColumn('Tên'),
                'type': st.column_config.SelectboxColumn('Loại', options=['fixed', 'percent'], default='fixed'),
                'value': st.column_config.NumberColumn('Giá trị', min_value=0.0),
            },
            key="other_costs",
        )

    if st.button("🚀 Đối soát lợi nhuận", type="primary", disabled=ads_up is None or not name_ok):
        try:
            cost_structure = build_cost_structure(platform_pct, op_type, op_value, other_df)
        except ValidationError as e:
            st.error(f"❌ Cấu trúc chi phí không hợp lệ: {e}")
            cost_structure = None

        if cost_structure is not None:
            with st.spinner("⏳ Đang đọc file, khớp giá vốn và tính P&L..."):
                try:
                    session.run(to_source(ads_up), to_source(orders_up), to_source(inventory_up), cost_structure)
                except MalformedFileError as e:
                    st.error(f"❌ {e}")
                    if e.preview:
                        st.caption(f"Dòng đầu tiên của file: {e.preview}")
                except PnlError as e:
                    st.error(f"❌ {e}")

    gen = session.generation
    if gen is None:
        st.info("⬅️ Tải file quảng cáo (và đơn hàng, tồn kho) rồi bấm **Đối soát lợi nhuận**.")
        return

    if gen.from_cache:
        st.warning(
            f"🗂️ Dữ liệu quảng cáo lần trước: {gen.file_names.get('ads', '')} ({len(gen.ads)} dòng"
            f"{', đã cắt bớt' if gen.truncated else ''}). Tải lại file để có P&L đầy đủ."
        )
    else:
        st.success(f"✅ Đối soát xong: {', '.join(gen.file_names.values())}")
    tab1, tab2, tab3, tab4, tab5, tab6 = st.tabs([
        "🏠 Tổng quan", "🤝 P&L KOC", "📦 P&L Sản phẩm", "🔍 Chi tiết KOC", "📺 Quảng cáo", "🧠 Ngữ cảnh AI",
    ])
    with tab1:
        render_overview(gen)
    with tab2:
        render_creator_pnl(gen)
    with tab3:
        render_product_pnl(gen)
    with tab4:
        render_creator_drilldown(gen)
    with tab5:
        render_ads(gen)
    with tab6:
        render_ai_context(gen)


if __name__ == "__main__":
    main()
