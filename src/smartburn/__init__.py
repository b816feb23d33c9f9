"""SmartBurn: STM32 firmware flashing over ST-LINK and the USART bootloader."""

__version__ = "1.0.0"
