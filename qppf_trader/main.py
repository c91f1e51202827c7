"""
================================================================================
MAIN TRADING LOOP
================================================================================

Runs the QPPF pipeline on a fixed cadence:
1. Market data from the broker (last-known / fallback price on failure)
2. Options flow from Unusual Whales (empty on failure)
3. QPPF algorithm -> Signal
4. Fresh account + positions -> RiskManager -> RiskAssessment
5. TradeExecutor submits only on EXECUTE

Signal every 30 seconds, 10 seconds after an unexpected error.

================================================================================
"""

import sys
import time
import signal as sig
import logging
import traceback
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from qppf_trader.config import (
    print_config,
    Account, BrokerPosition, FlowAlert, MarketData, TradeResult,
    DEFAULT_SYMBOL, PAPER_TRADING, FALLBACK_PRICE,
    POLL_INTERVAL_SECONDS, RETRY_INTERVAL_SECONDS,
    LOG_DIR, LOG_LEVEL, LOG_FORMAT
)
from qppf_trader.algorithm import QPPFAlgorithm
from qppf_trader.errors import QPPFError
from qppf_trader.executor import TradeExecutor
from qppf_trader.flow import UnusualWhalesClient
from qppf_trader.risk import RiskManager
from qppf_trader.robinhood import RobinhoodClient

logger = logging.getLogger(__name__)


def setup_logging(level: str = LOG_LEVEL, log_dir: str = LOG_DIR):
    """Console + file logging"""
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(f'{log_dir}/trading.log')
        ]
    )


class TradingSession:
    """
    One symbol, one algorithm, one loop

    Parameters:
    -----------
    algorithm : QPPFAlgorithm
    market_data : provider with get_market_data(symbol) -> MarketData
    flow_provider : provider with get_options_flow(symbol) -> List[FlowAlert]
    broker : provider with get_account() / get_positions()
    risk_manager : RiskManager
    executor : TradeExecutor (None = signal only, never trade)
    interval : float - Seconds between cycles
    retry_interval : float - Seconds after an unexpected error
    sleep : callable - Injected for tests
    """

    def __init__(
        self,
        algorithm: QPPFAlgorithm,
        market_data,
        flow_provider,
        broker,
        risk_manager: RiskManager,
        executor: Optional[TradeExecutor] = None,
        interval: float = POLL_INTERVAL_SECONDS,
        retry_interval: float = RETRY_INTERVAL_SECONDS,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.algorithm = algorithm
        self.market_data = market_data
        self.flow_provider = flow_provider
        self.broker = broker
        self.risk_manager = risk_manager
        self.executor = executor
        self.interval = interval
        self.retry_interval = retry_interval
        self._sleep = sleep

        self.running = False
        self.cycle_count = 0
        self.last_market_data: Optional[MarketData] = None
        self.trade_log: List[Dict] = []

    @property
    def symbol(self) -> str:
        return self.algorithm.symbol

    # =========================================================================
    # DATA FETCH (degrading)
    # =========================================================================

    def _fetch_market_data(self) -> MarketData:
        try:
            data = self.market_data.get_market_data(self.symbol)
            self.last_market_data = data
            return data
        except QPPFError as e:
            if self.last_market_data is not None:
                logger.warning(f"Market data unavailable ({e}) - using last known price "
                               f"${self.last_market_data.price:.2f}")
                return self.last_market_data
            logger.warning(f"Market data unavailable ({e}) - using fallback price ${FALLBACK_PRICE:.2f}")
            return MarketData(
                symbol=self.symbol,
                price=FALLBACK_PRICE,
                volume=0,
                bid=0.0,
                ask=0.0,
                timestamp=datetime.now()
            )

    def _fetch_flow(self) -> List[FlowAlert]:
        try:
            return self.flow_provider.get_options_flow(self.symbol)
        except QPPFError as e:
            logger.warning(f"Options flow unavailable: {e}")
            return []

    def _fetch_account(self) -> Optional[Account]:
        try:
            return self.broker.get_account()
        except QPPFError as e:
            logger.warning(f"Account unavailable: {e}")
            return None

    def _fetch_positions(self) -> List[BrokerPosition]:
        try:
            return self.broker.get_positions()
        except QPPFError as e:
            logger.warning(f"Positions unavailable: {e}")
            return []

    # =========================================================================
    # CYCLE
    # =========================================================================

    def run_cycle(self, now: datetime = None) -> Dict:
        """
        Single trading cycle

        Returns:
        --------
        Dict : signal, assessment and trade result (None when no order
               was attempted)
        """
        if now is None:
            now = datetime.now()
        self.cycle_count += 1
        logger.info(f"{'='*60}")
        logger.info(f"CYCLE {self.cycle_count}: {now.strftime('%H:%M:%S')} {self.symbol}")
        logger.info(f"{'='*60}")

        # 1. Market data + flow
        market = self._fetch_market_data()
        alerts = self._fetch_flow()

        # 2. Signal
        signal = self.algorithm.generate_signal(market, alerts, now)

        # 3. Fresh account snapshot
        account = self._fetch_account()
        positions = self._fetch_positions()

        # 4. Risk
        assessment = self.risk_manager.assess_trade(
            signal, signal.flow, account, positions, market.price, now
        )

        if account is not None:
            report = self.risk_manager.generate_risk_report(account, positions)
            logger.info(f"Portfolio risk: {report.portfolio_risk:.1%} ({report.risk_status.value}), "
                        f"{report.position_count} positions")
            for rec in report.recommendations:
                logger.warning(f"Risk: {rec}")

        # 5. Execution
        trade: Optional[TradeResult] = None
        if self.executor is not None and self.risk_manager.should_execute_trade(assessment):
            trade = self.executor.execute(signal, assessment)
            if trade.success:
                self.algorithm.state.trades_executed += 1
                self.trade_log.append({
                    'time': now.isoformat(),
                    'symbol': self.symbol,
                    'side': trade.side.value if trade.side else None,
                    'quantity': trade.quantity,
                    'price': market.price,
                    'order_id': trade.order_id,
                })

        return {
            'signal': signal,
            'assessment': assessment,
            'trade': trade,
        }

    # =========================================================================
    # LOOP
    # =========================================================================

    def run(self, max_cycles: int = None):
        """Loop until stop() (or max_cycles)"""
        logger.info(f"Starting trading loop for {self.symbol}")
        logger.info(f"Poll interval: {self.interval} seconds")

        self.running = True
        cycles = 0
        while self.running:
            try:
                self.run_cycle()
                delay = self.interval
            except Exception as e:
                logger.error(f"Error in main loop: {e}")
                logger.error(traceback.format_exc())
                delay = self.retry_interval

            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            if self.running:
                self._sleep(delay)

        self.running = False
        logger.info("Trading loop stopped")

    def stop(self):
        """Cooperative stop - the current cycle finishes first"""
        logger.info("Stopping trading loop...")
        self.running = False


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def main():
    """Main entry point"""
    setup_logging()
    print_config()

    logger.info("=" * 70)
    logger.info("STARTING QPPF SIGNAL & RISK ENGINE")
    logger.info("=" * 70)

    broker = RobinhoodClient()
    if not broker.login():
        logger.error("Failed to login to Robinhood!")
        logger.error("Check ROBINHOOD_USERNAME / ROBINHOOD_PASSWORD in your environment or .env")
        return 1

    logger.info(f"Mode: {'LIVE TRADING' if not PAPER_TRADING else 'PAPER TRADING'}")

    risk_manager = RiskManager()
    session = TradingSession(
        algorithm=QPPFAlgorithm(DEFAULT_SYMBOL),
        market_data=broker,
        flow_provider=UnusualWhalesClient(),
        broker=broker,
        risk_manager=risk_manager,
        executor=TradeExecutor(broker, risk_manager)
    )

    def _handle_shutdown(signum, frame):
        logger.info("Shutdown signal received")
        session.stop()

    sig.signal(sig.SIGINT, _handle_shutdown)
    sig.signal(sig.SIGTERM, _handle_shutdown)

    try:
        session.run()
    finally:
        stats = session.algorithm.get_statistics()
        logger.info(f"Cycles: {session.cycle_count}, trades: {stats['trades_executed']}")
        broker.logout()
        logger.info("Shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
