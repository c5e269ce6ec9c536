"""
Streamlit Frontend for KidsBank

This is the user interface the family uses: parents on their phones,
children on the family tablet.

DESIGN PRINCIPLES:
1. Big, simple screens (children use this too)
2. Money always shown with two decimals
3. Clear error messages in simple language
4. Visual feedback for all operations
5. No hidden actions

The UI never touches storage. Every action goes through a flow in
kidsbank.orchestrator, which checks who is allowed to do what.
"""

import asyncio
from datetime import date
from decimal import Decimal

import streamlit as st
from pydantic import ValidationError

from kidsbank.auth import InvalidPinError
from kidsbank.config import validate_all_settings
from kidsbank.models.ledger import DAYS_OF_WEEK, TransactionFilter, TransactionType, User
from kidsbank.orchestrator import (
    AppComponents,
    PermissionDeniedError,
    SetupError,
    create_app_components,
)
from kidsbank.services.avatar import AvatarError
from kidsbank.services.storage import InsufficientFundsError, StorageError


# Page configuration
st.set_page_config(
    page_title="KidsBank",
    page_icon="🐷",
    layout="centered",
    initial_sidebar_state="expanded",
)

# Custom CSS for better UX
st.markdown("""
<style>
    .stButton>button {
        width: 100%;
        margin-top: 10px;
    }
    .balance-box {
        padding: 20px;
        background-color: #d4edda;
        border-radius: 10px;
        border-left: 5px solid #28a745;
        margin: 10px 0;
    }
    .big-number {
        font-size: 2.5em;
        font-weight: bold;
        color: #2c3e50;
    }
</style>
""", unsafe_allow_html=True)


def run_async(coro):
    """Helper to run async functions in Streamlit."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@st.cache_resource
def get_components() -> AppComponents:
    """Get or create application components (cached)."""
    try:
        return create_app_components(use_storage=True)
    except Exception as e:
        st.error(f"Failed to open the database, using a temporary in-memory bank: {e}")
        return create_app_components(use_storage=False)


def money(amount) -> str:
    return f"£{Decimal(amount):,.2f}"


def main():
    """Main application entry point."""
    components = get_components()

    if not run_async(components.setup.is_setup_complete()):
        render_setup_page(components)
        return

    user: User = st.session_state.get("user")
    if user is None:
        render_login_page(components)
        return

    # Sidebar navigation
    if user.avatar_url:
        st.sidebar.image(user.avatar_url, width=96)
    st.sidebar.title(f"🐷 Hi, {user.name}!")
    st.sidebar.markdown("---")

    if user.is_parent:
        pages = ["🏦 Accounts", "🎯 Goals", "📜 History", "⚙️ Settings"]
    else:
        pages = ["🏦 My Money", "🎯 My Goals", "📜 History", "⚙️ My Settings"]
    page = st.sidebar.radio("Navigate to:", pages, index=0)

    st.sidebar.markdown("---")
    if st.sidebar.button("🚪 Log out"):
        st.session_state.user = None
        st.rerun()

    # Route to appropriate page
    if page in ("🏦 Accounts", "🏦 My Money"):
        render_accounts_page(components, user)
    elif page in ("🎯 Goals", "🎯 My Goals"):
        render_goals_page(components, user)
    elif page == "📜 History":
        render_history_page(components, user)
    else:
        render_settings_page(components, user)


def render_setup_page(components: AppComponents):
    """Render the first-run setup wizard."""
    st.title("🐷 Welcome to KidsBank")
    st.markdown("Choose a 4-digit PIN for each member of the family.")

    members = components.setup.family.members
    if not members:
        st.error(
            "No family members are configured. Set FAMILY_MEMBERS in your `.env` "
            "file (see `.env.example`) and restart the app."
        )
        return

    with st.form("setup"):
        pins = {}
        for member in members:
            label = f"{member.name} ({member.role.value})"
            if member.allowance > 0:
                label += f", allowance {money(member.allowance)} a week"
            pins[member.name] = st.text_input(label, type="password", max_chars=components.setup.pin_length)
        submitted = st.form_submit_button("✅ Create our bank", type="primary")

    if submitted:
        try:
            run_async(components.setup.complete_setup(pins))
        except (SetupError, InvalidPinError) as e:
            st.error(str(e))
            return
        st.success("All set! Everyone can now log in.")
        st.rerun()


def render_login_page(components: AppComponents):
    """Render the PIN login screen."""
    st.title("🐷 Who's there?")

    members = run_async(components.login.list_members())
    names = [m.name for m in members]
    columns = st.columns(max(1, len(members)))
    for column, member in zip(columns, members):
        with column:
            if member.avatar_url:
                st.image(member.avatar_url, width=80)
            st.markdown(f"**{member.name}**")

    with st.form("login"):
        name = st.selectbox("Name", names)
        pin = st.text_input("PIN", type="password", max_chars=8)
        submitted = st.form_submit_button("🔓 Log in", type="primary")

    if submitted:
        with st.spinner("Checking..."):
            user = run_async(components.login.login(name, pin))
        if user is None:
            st.error("That PIN is not right. Try again!")
            return
        st.session_state.user = user
        st.rerun()


def render_accounts_page(components: AppComponents, user: User):
    """Render balances and, for parents, the deposit/withdrawal form."""
    st.title("🏦 Accounts" if user.is_parent else "🏦 My Money")

    accounts = run_async(components.ledger.list_accounts(user))
    if not accounts:
        st.info("There are no accounts yet.")
        return

    for account in accounts:
        st.markdown(f"""
        <div class="balance-box">
            <h4>{account.user_name}</h4>
            <div class="big-number">{money(account.balance)}</div>
            <p>Weekly allowance: {money(account.allowance)}</p>
        </div>
        """, unsafe_allow_html=True)

    if not user.is_parent:
        return

    st.markdown("---")
    st.subheader("💸 Add or take out money")

    with st.form("transaction", clear_on_submit=True):
        account_id = st.selectbox(
            "Account",
            options=[a.id for a in accounts],
            format_func=lambda a_id: next(a.user_name for a in accounts if a.id == a_id),
        )
        kind = st.radio("Type", [TransactionType.DEPOSIT, TransactionType.WITHDRAWAL],
                        format_func=lambda t: t.value.title(), horizontal=True)
        amount = st.number_input("Amount", min_value=0.0, step=0.5, format="%.2f")
        comment = st.text_input("What is it for? *", max_chars=200)
        on_date = st.date_input("Date", value=date.today(), max_value=date.today())
        submitted = st.form_submit_button("💾 Save", type="primary")

    if submitted:
        record = (
            components.ledger.record_deposit
            if kind == TransactionType.DEPOSIT
            else components.ledger.record_withdrawal
        )
        try:
            txn = run_async(record(user, account_id, Decimal(str(amount)), comment, on_date))
        except InsufficientFundsError as e:
            st.error(f"Not enough money: only {money(e.balance)} available.")
            return
        except ValidationError:
            st.error("Please enter an amount above zero and a comment.")
            return
        except (PermissionDeniedError, StorageError) as e:
            st.error(str(e))
            return
        st.success(f"Saved. New balance: {money(txn.balance_after)}")
        st.rerun()


def render_goals_page(components: AppComponents, user: User):
    """Render savings goals with progress and priority controls."""
    st.title("🎯 Goals" if user.is_parent else "🎯 My Goals")

    accounts = run_async(components.ledger.list_accounts(user))
    if not accounts:
        st.info("There are no accounts yet.")
        return

    account = accounts[0]
    if len(accounts) > 1:
        account = st.selectbox("Whose goals?", accounts, format_func=lambda a: a.user_name)

    overview = run_async(components.goals.list_goal_progress(user, account.id))
    st.markdown(f"Balance: **{money(overview.account.balance)}**. "
                "Money fills the goals from the top down.")

    active_ids = [p.goal.id for p in overview.active]
    for index, progress in enumerate(overview.active):
        goal, allocation = progress.goal, progress.allocation
        st.markdown(f"### {goal.emoji or '⭐'} {goal.name}")
        st.progress(min(1.0, allocation.percent / 100))
        st.caption(
            f"{money(allocation.allocated)} of {money(goal.target_amount)} "
            f"({allocation.percent:.0f}%), {money(allocation.remaining)} to go"
            + (f", by {goal.target_date:%d %B %Y}" if goal.target_date else "")
        )

        col1, col2, col3, col4 = st.columns(4)
        with col1:
            if index > 0 and st.button("⬆️ Up", key=f"up-{goal.id}"):
                order = list(active_ids)
                order[index - 1], order[index] = order[index], order[index - 1]
                run_async(components.goals.reorder_goals(user, account.id, order))
                st.rerun()
        with col2:
            if index < len(active_ids) - 1 and st.button("⬇️ Down", key=f"down-{goal.id}"):
                order = list(active_ids)
                order[index + 1], order[index] = order[index], order[index + 1]
                run_async(components.goals.reorder_goals(user, account.id, order))
                st.rerun()
        with col3:
            if st.button("🏁 Done", key=f"done-{goal.id}"):
                run_async(components.goals.set_completed(user, goal.id))
                st.balloons()
                st.rerun()
        with col4:
            if st.button("🗑️ Delete", key=f"delete-{goal.id}"):
                run_async(components.goals.delete_goal(user, goal.id))
                st.rerun()

    if overview.completed:
        with st.expander(f"🏆 Completed goals ({len(overview.completed)})"):
            for goal in overview.completed:
                st.markdown(f"{goal.emoji or '⭐'} **{goal.name}** ({money(goal.target_amount)})")

    st.markdown("---")
    st.subheader("➕ New goal")
    with st.form("new-goal", clear_on_submit=True):
        name = st.text_input("What are you saving for?", max_chars=100)
        target = st.number_input("How much does it cost?", min_value=0.0, step=1.0, format="%.2f")
        emoji = st.text_input("Emoji (optional)", max_chars=4)
        has_date = st.checkbox("I want it by a date")
        target_date = st.date_input("Date", value=date.today())
        submitted = st.form_submit_button("🎯 Add goal", type="primary")

    if submitted:
        try:
            run_async(components.goals.create_goal(
                user,
                account.id,
                name=name,
                target_amount=Decimal(str(target)),
                target_date=target_date if has_date else None,
                emoji=emoji,
            ))
        except ValidationError:
            st.error("Please give the goal a name and a price above zero.")
            return
        st.rerun()


def render_history_page(components: AppComponents, user: User):
    """Render the transaction history with filters."""
    st.title("📜 History")

    col1, col2 = st.columns(2)
    with col1:
        account_id = None
        if user.is_parent:
            accounts = run_async(components.ledger.list_accounts(user))
            account_id = st.selectbox(
                "Account",
                options=[None] + [a.id for a in accounts],
                format_func=lambda a_id: "Everyone" if a_id is None else a_id.title(),
            )
        txn_type = st.selectbox(
            "Type",
            options=[None] + list(TransactionType),
            format_func=lambda t: "All types" if t is None else t.value.title(),
        )
    with col2:
        date_range = st.date_input("Date range", value=[], help="Pick a start and end day")

    date_from = date_to = None
    if isinstance(date_range, (list, tuple)) and len(date_range) == 2:
        date_from, date_to = date_range

    filters = TransactionFilter(
        account_id=account_id,
        type=txn_type,
        date_from=date_from,
        date_to=date_to,
    )
    transactions = run_async(components.ledger.list_transactions(user, filters))

    if not transactions:
        st.info("No transactions yet.")
        return

    st.dataframe(
        [
            {
                "Date": t.created_at.strftime("%d %b %Y %H:%M"),
                "Who": t.account_id.title(),
                "Type": t.type.value.title(),
                "Amount": money(t.amount),
                "Balance": money(t.balance_after),
                "Comment": t.comment,
                "By": t.performed_by,
            }
            for t in transactions
        ],
        use_container_width=True,
        hide_index=True,
    )


def render_settings_page(components: AppComponents, user: User):
    """Render allowance, PIN and avatar settings."""
    st.title("⚙️ Settings" if user.is_parent else "⚙️ My Settings")

    if user.is_parent:
        overview = run_async(components.settings.overview(user))

        st.markdown("### 📅 Allowance day")
        current = overview.settings.allowance_weekday
        day = st.selectbox(
            "Allowances are paid every",
            options=list(DAYS_OF_WEEK),
            index=current if current is not None else 0,
            format_func=str.title,
        )
        if day != overview.settings.allowance_day and st.button("Save allowance day"):
            run_async(components.settings.update_allowance_day(user, day))
            st.success(f"Allowances will be paid every {day.title()}.")
            st.rerun()

        st.markdown("### 💰 Weekly allowances")
        for account in overview.children:
            with st.form(f"allowance-{account.id}"):
                amount = st.number_input(
                    account.user_name,
                    min_value=0.0,
                    value=float(account.allowance),
                    step=0.5,
                    format="%.2f",
                )
                if st.form_submit_button("Save"):
                    run_async(components.settings.update_allowance(user, account.id, Decimal(str(amount))))
                    st.success(f"{account.user_name} now gets {money(amount)} a week.")

    st.markdown("### 🔑 PIN")
    members = run_async(components.login.list_members())
    if user.is_parent:
        target = st.selectbox("Change the PIN of", members, format_func=lambda m: m.name)
    else:
        target = user
    with st.form("pin", clear_on_submit=True):
        new_pin = st.text_input("New PIN", type="password", max_chars=8)
        if st.form_submit_button("Change PIN"):
            try:
                run_async(components.settings.change_pin(user, target.id, new_pin))
                st.success("PIN changed.")
            except (InvalidPinError, PermissionDeniedError) as e:
                st.error(str(e))

    st.markdown("### 🖼️ Picture")
    uploaded = st.file_uploader("Choose a picture", type=["jpg", "jpeg", "png", "webp"])
    col1, col2 = st.columns(2)
    with col1:
        if uploaded and st.button("📤 Upload picture"):
            with st.spinner("Uploading..."):
                try:
                    url = run_async(components.settings.upload_avatar(user, target.id, uploaded.read()))
                except AvatarError as e:
                    st.error(str(e))
                else:
                    if target.id == user.id:
                        st.session_state.user = user.model_copy(update={"avatar_url": url})
                    st.success("Picture updated!")
                    st.rerun()
    with col2:
        if st.button("🗑️ Remove picture"):
            run_async(components.settings.remove_avatar(user, target.id))
            if target.id == user.id:
                st.session_state.user = user.model_copy(update={"avatar_url": None})
            st.rerun()

    if user.is_parent:
        st.markdown("---")
        st.markdown("### Connection Status")
        status = validate_all_settings()
        services = [
            ("Database", "database"),
            ("Cloudinary (Pictures)", "cloudinary"),
            ("Family", "family"),
        ]
        for name, key in services:
            if status.get(key, False):
                st.success(f"✅ {name} - OK")
            else:
                error = status.get(f"{key}_error", "Not configured")
                st.error(f"❌ {name} - {error}")


if __name__ == "__main__":
    main()
